"""Core interfaces.

Why:
- Defines the contracts (Protocol) that concrete integrations implement.
- The CLI and the doctor depend on the contract, not on the integrations.
"""
