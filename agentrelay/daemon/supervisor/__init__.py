"""Process supervision for the agent relay daemon.

- **installer**: Binary resolution (settings override -> install_dir -> PATH)
- **process**: Subprocess wrapper (JSON-lines stdio, stderr capture, SIGTERM/SIGKILL ladder)
- **shared**: Shared servers multiplexing sessions (codex app-server, opencode serve)
- **session**: Per-session prompt FIFO and turn gate
- **backends**: One backend per concurrency model (per-message, dedicated, shared)
- **supervisor**: Session lifecycle entry point used by the HTTP layer
"""