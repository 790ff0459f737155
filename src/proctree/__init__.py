"""Live, identity-preserving view of the process tree below a root pid."""
