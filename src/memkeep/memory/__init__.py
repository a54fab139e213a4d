"""Memory storage: markdown files are the source of truth.

Layout of one storage root:
    <root>/
    ├── permanent/
    │   └── decision-use-postgres.md   # One file per memory, YAML frontmatter + body
    ├── temporary/
    │   └── breadcrumb-wip-auth.md     # Breadcrumbs (temporary navigation markers)
    ├── index.json                     # Derived header projection, rebuildable
    ├── graph.json                     # Typed, directed links between memories
    ├── embeddings.json                # Cached vectors keyed by content fingerprint
    └── .memkeep.lock                  # Advisory lock for load-mutate-save cycles

Which root a memory lives in is decided by `memkeep.scope`.
"""
