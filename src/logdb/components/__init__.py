"""Storage components: codec, segment store, index and compaction."""
