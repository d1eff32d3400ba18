"""
Pipeline stage units for makerfleet.

Stage order: generate, transfer, transfer_check, swap, close, close, check.
"""

from enum import Enum
from typing import List

from makerfleet.pipeline.orchestrator import Stage
from makerfleet.stages.base import StageContext, StageUnit, WalletSnapshot, snapshot
from makerfleet.stages.check import CheckStage
from makerfleet.stages.close import CloseStage
from makerfleet.stages.generate import GenerateStage
from makerfleet.stages.swap import SwapStage
from makerfleet.stages.transfer import TransferCheckStage, TransferStage


class StartStage(str, Enum):
    """Stages a run may start from."""
    GENERATE = "generate"
    TRANSFER = "transfer"
    SWAP = "swap"
    CLOSE = "close"
    CHECK = "check"


def build_stages() -> List[Stage]:
    units: List[StageUnit] = [
        GenerateStage(),
        TransferStage(),
        TransferCheckStage(),
        SwapStage(),
        CloseStage(),
        CloseStage(),
        CheckStage(),
    ]
    return [Stage(name=unit.name, ordinal=i, unit=unit) for i, unit in enumerate(units)]


__all__ = [
    "CheckStage",
    "CloseStage",
    "GenerateStage",
    "StageContext",
    "StageUnit",
    "StartStage",
    "SwapStage",
    "TransferCheckStage",
    "TransferStage",
    "WalletSnapshot",
    "build_stages",
    "snapshot",
]
