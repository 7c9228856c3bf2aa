"""
Persistence layer for workflow run state.

This package provides a key-value store abstraction with a JSON file
implementation, and typed accessors for the keys the orchestrator keeps
across restarts.
"""

from .run_state import JSONKeyValueStore, KeyValueStore, RunStateRepository

__all__ = ['JSONKeyValueStore', 'KeyValueStore', 'RunStateRepository']
