"""BookShare - Utilities Package (validators and CLI output helpers)."""
