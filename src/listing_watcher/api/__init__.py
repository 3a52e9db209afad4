"""HTTP surface of the watcher worker."""
