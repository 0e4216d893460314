"""Task queue engine: model, stage rules, the locked store and its mirror.

The store (``tasks.json``) is authoritative.  The mirror
(``current-task.json``) is a disposable projection of the active task.
"""
