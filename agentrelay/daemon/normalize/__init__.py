"""Normalization core.

- **operations**: Universal operations produced by adapters
- **tracker**: Per-session state (sequence counter, items, native-id maps, HITL)
- **synthesizer**: Capability-gap filling (synthetic lifecycle events)
- **normalizer**: Per-session pipeline (decode -> convert -> apply)
- **sink**: Event delivery (in-memory event log with resumable follow)
- **diffing**: Cumulative snapshot -> delta conversion
"""
