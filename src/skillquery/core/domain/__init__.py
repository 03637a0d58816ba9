"""Domain models and entities.

Why:
- Pure, strict data structures (dataclasses and Pydantic v2) live here.
- The domain knows nothing about HTTP or the CLI: only classified payloads and
  upstream records.
"""
