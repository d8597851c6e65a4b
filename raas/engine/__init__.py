"""
Lifecycle engine.

- state_machine.py: legal (state, operation) transitions, no I/O
- steps.py: per-step retry/backoff/timeout runner
- backend.py: container and tooling boundary (docker, npm, yarn, RPC health)
- driver.py: ordered side effects for each operation
- dispatcher.py: admission, locking and commit of lifecycle requests
- exporter.py: lock-free read model for the HTTP surface
"""
