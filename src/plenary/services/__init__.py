"""Service layer helpers (backend persistence, settings)."""
