"""Application services built on the core admission components."""
