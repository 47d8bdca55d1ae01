"""Import job lifecycle: registry, persistent store, runner and rollback."""
