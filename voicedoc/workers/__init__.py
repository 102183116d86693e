"""Queue worker: job store, stage pipeline, loop, heartbeat and shutdown."""
