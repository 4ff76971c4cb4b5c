"""ABI fragments of the TaskEscrowPool contract used by the gateway.

Only the views, admin writes and events the settlement engine touches.
"""

from __future__ import annotations


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg, "type": typ, "indexed": indexed} for arg, typ, indexed in inputs
        ],
    }


def _function(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[tuple[str, str]] | None = None,
    view: bool = False,
) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view" if view else "nonpayable",
        "inputs": [{"name": arg, "type": typ} for arg, typ in inputs],
        "outputs": [{"name": arg, "type": typ} for arg, typ in (outputs or [])],
    }


ESCROW_ABI: list[dict] = [
    # --- Events ---
    _event(
        "Deposited",
        [
            ("taskId", "uint256", True),
            ("externalId", "string", True),
            ("employer", "address", False),
            ("amount", "uint256", False),
        ],
    ),
    _event(
        "Released",
        [
            ("taskId", "uint256", True),
            ("to", "address", False),
            ("amount", "uint256", False),
            ("reason", "string", False),
        ],
    ),
    _event(
        "Cancelled",
        [
            ("taskId", "uint256", True),
            ("employer", "address", False),
            ("amount", "uint256", False),
            ("reason", "string", False),
        ],
    ),
    # --- Views ---
    _function(
        "escrows",
        [("taskId", "uint256")],
        [
            ("employer", "address"),
            ("freelancer", "address"),
            ("amount", "uint256"),
            ("deadline", "uint256"),
            ("settled", "bool"),
            ("externalTaskId", "string"),
        ],
        view=True,
    ),
    _function("externalToInternal", [("externalId", "string")], [("", "uint256")], view=True),
    _function("taskCount", [], [("", "uint256")], view=True),
    # --- Admin writes ---
    _function("release", [("taskId", "uint256"), ("to", "address"), ("reason", "string")]),
    _function("cancel", [("taskId", "uint256"), ("reason", "string")]),
    _function(
        "releaseAfterDeadline",
        [("taskId", "uint256"), ("to", "address"), ("reason", "string")],
    ),
]
