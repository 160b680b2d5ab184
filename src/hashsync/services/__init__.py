"""Infrastructure services shared by hashsync components."""
