"""Storage plumbing: engine policy, ORM tables and migrations."""
