"""Pure domain values shared by engines and services."""
