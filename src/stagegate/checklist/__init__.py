"""Per-stage checklists: item registry, evidence rules and the transition gate."""
