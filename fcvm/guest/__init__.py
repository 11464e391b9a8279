"""Guest-side bootstrap and diagnostics for the microVM."""
