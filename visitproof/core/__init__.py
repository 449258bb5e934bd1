"""Core primitives: clock, canonical encoding, signing, data model, errors."""
