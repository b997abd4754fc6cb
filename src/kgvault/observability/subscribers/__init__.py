"""Event subscribers. Each module exposes a register_* function."""
