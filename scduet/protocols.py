"""
scduet/protocols.py -- Callback protocols shared by the pipelines.

Types
-----
ProgressCallback
    Protocol — ``(current, total, step_name) -> None``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ProgressCallback(Protocol):
    """Progress reporting callback.

    Parameters
    ----------
    current : int
        Current step index (0-based).
    total : int
        Total number of steps.
    step_name : str
        Name of the stage about to run.
    """

    def __call__(self, current: int, total: int, step_name: str) -> None: ...
