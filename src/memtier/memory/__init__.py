"""Memory lifecycle — live store, cache scanner, eviction engine, archive store.

Layout:
    ~/.memtier/sessions/
    ├── global/                                 # Distinguished cross-vault pool
    │   ├── 2026/02/18/<sessionId>/
    │   │   ├── memory.md                       # Record content
    │   │   └── metadata.json                   # title, summary, tags, usage
    │   └── .archives/
    │       └── memories-archive-2026-02.json   # Month bundle, keyed by creation date
    └── <vault-id>/                             # One directory per vault/node scope
        └── ...

Records move one way on eviction (live → .archives/) and back only through restore.
Nothing is cached between calls; every scan, search and load re-reads disk.
"""
