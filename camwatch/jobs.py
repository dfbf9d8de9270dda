from __future__ import annotations

"""Messages passed between the command surface, scheduler and dispatcher."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Command:
    """Operator command, e.g. `bot sched on mon-5` -> noun=sched verb=on obj=mon-5."""

    camera_index: int
    noun: str = ""
    verb: str = ""
    obj: str = ""


@dataclass(frozen=True)
class UploadJob:
    """One image to send; alert vs. informational is decided by the queue it is put on."""

    camera_index: int
    caption: str
    data: bytes
