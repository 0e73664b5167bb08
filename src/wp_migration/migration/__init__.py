"""Migration engine: identity mapping, query building and per-entity importers."""
