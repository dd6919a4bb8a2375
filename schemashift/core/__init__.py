"""Migration engine components."""
