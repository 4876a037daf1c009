"""
Error taxonomy for the automation core.

  ConfigurationError    — a flow graph, stage automation or campaign is
                          misconfigured. Fatal for the single session /
                          automation / campaign instance, never for the worker.
  ConcurrencyViolation  — a uniqueness constraint was hit while creating a
                          session or deal automation. Another instance already
                          owns the conversation / deal; the caller discards its
                          own attempt.

Gateway failures live in channels/base.py next to the gateway clients.
"""
from __future__ import annotations


class AutomationError(Exception):
    """Base exception for the automation engine."""


class ConfigurationError(AutomationError):
    def __init__(self, message: str, flow_id: str = "", node_id: str = ""):
        self.flow_id = flow_id
        self.node_id = node_id
        super().__init__(message)


class ConcurrencyViolation(AutomationError):
    def __init__(self, resource: str, key: str):
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} already active for {key}")
