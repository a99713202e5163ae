"""Adapters layer for Clinical-Vault.

This module contains the adapters that interface with external systems:
storage backends, blob stores, the tenant directory and the virus scanner.
Adapters implement Port interfaces defined in the domain layer.
"""
