"""
Lead follow-up stage table.

Each stage is a StageDefinition tagged with an action; the executor iterates
the table generically instead of branching on stage numbers.

Default sequence:
  1 text (initial)   -> +10 min
  2 call             -> +5 min
  3 double call      -> +5 min
  4 text (second)    -> +10 min
  5 call + payment link (terminal)
"""
from typing import Literal, Optional
from pydantic import BaseModel


class StageAction:
    """Stage action constants."""
    TEXT = "text"
    CALL = "call"
    DOUBLE_CALL = "double_call"


class StageDefinition(BaseModel):
    stage: int
    action: Literal["text", "call", "double_call"]
    template: Optional[str] = None  # text stages only
    delay_minutes: Optional[int] = None  # until the next stage; None on the terminal stage
    creates_payment_link: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.delay_minutes is None


DEFAULT_STAGE_DELAYS_MINUTES = [10, 5, 5, 10]

_BASE_STAGES = [
    {"stage": 1, "action": StageAction.TEXT, "template": "initial"},
    {"stage": 2, "action": StageAction.CALL},
    {"stage": 3, "action": StageAction.DOUBLE_CALL},
    {"stage": 4, "action": StageAction.TEXT, "template": "second"},
    {"stage": 5, "action": StageAction.CALL, "creates_payment_link": True},
]

STAGE_COUNT = len(_BASE_STAGES)


def build_stage_table(delays_minutes: Optional[list[int]] = None) -> list[StageDefinition]:
    """
    Build the stage table with per-tenant delays.
    delays_minutes[i] is the wait after stage i+1; missing entries use the defaults.
    """
    delays = list(delays_minutes or [])
    table = []
    for index, base in enumerate(_BASE_STAGES):
        if index == len(_BASE_STAGES) - 1:
            delay = None
        elif index < len(delays) and delays[index] is not None:
            delay = max(0, int(delays[index]))
        else:
            delay = DEFAULT_STAGE_DELAYS_MINUTES[index]
        table.append(StageDefinition(**base, delay_minutes=delay))
    return table


def get_stage(table: list[StageDefinition], stage: int) -> Optional[StageDefinition]:
    for definition in table:
        if definition.stage == stage:
            return definition
    return None


def next_stage(table: list[StageDefinition], stage: int) -> Optional[StageDefinition]:
    current = get_stage(table, stage)
    if current is None or current.is_terminal:
        return None
    return get_stage(table, stage + 1)
