"""Memory engine: two-level event store with retrieval, compaction and lifecycle.

Layout:
    ~/.ambient/memory/
    └── projects/
        └── <projectKey>/                  # sha256(origin)[:16]
            ├── project.json               # Project-wide events (cap 200)
            ├── tasks/
            │   └── <taskKey>.json         # Branch-scoped events (cap 500)
            └── archived/
                └── <taskKey>.json         # Merged branches, kept 7 days

Each repository also gets `.ambient/context.md`, a rendered copy of the
scoped memory for agents that read files instead of prompts.
"""
