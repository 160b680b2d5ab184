"""Hash codec, hash store, dependency graph and composite hash engine."""
