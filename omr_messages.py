"""Message shapes exchanged with the OMR worker.

Requests:  {"image": <payload>, "num_questions": <int or None>}
Responses: {"type": "SUCCESS", "payload": [<letter or "-">, ...]}
           {"type": "ERROR", "payload": "<reason>"}
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

SUCCESS = "SUCCESS"
ERROR = "ERROR"
READY = "READY"

Message = Dict[str, Any]


def success_message(answers: Sequence[str]) -> Message:
    return {"type": SUCCESS, "payload": list(answers)}


def error_message(reason: object) -> Message:
    text = str(reason) or "An unknown error occurred during processing."
    return {"type": ERROR, "payload": text}


def ready_message() -> Message:
    return {"type": READY}


def request_message(image: Any, num_questions: Optional[int] = None) -> Message:
    return {"image": image, "num_questions": num_questions}


def is_success(message: Message) -> bool:
    return message.get("type") == SUCCESS
