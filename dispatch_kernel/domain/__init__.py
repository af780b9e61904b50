"""Pure domain core: statuses, transition tables, DTOs, events, clock."""
