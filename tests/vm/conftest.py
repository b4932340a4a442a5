"""VM scenarios share the fixtures registered from ``tests.vm.fixtures``."""
