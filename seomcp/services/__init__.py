"""Worker execution services: admission pool, per-request spawner, worker pool interface."""
