"""Strategy detectors: the pluggable signal sources the engine replays."""
