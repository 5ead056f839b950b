"""
Knowledge Base package for knowledge_sync.

  - registry: cached discovery of global and local projects
  - jobs / indexer: background, single-flight index builds
  - store / searcher: persisted chunk collections and ranked search
  - drift: version and content drift of synced assets
"""
