"""Protocol-agnostic dispatch machinery."""
