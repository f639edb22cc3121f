"""Per-call relay: turn arbitration, end-of-turn detection and session lifecycle."""
