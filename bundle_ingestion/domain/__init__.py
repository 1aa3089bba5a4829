"""Pure admission-row types and validators (ZERO I/O)."""
