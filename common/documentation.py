"""
OpenAPI schema for the game service: bearer auth, the error envelope and
the error codes each status can carry.
"""
from collections import defaultdict
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from common.error_handling import HTTP_EXCEPTION_CODES, HTTP_STATUS, ErrorCodes, StandardErrorResponse

REF_TEMPLATE = "#/components/schemas/{model}"

TAGS = [
    {"name": "Rounds", "description": "Round state, history and realtime feeds"},
    {"name": "Bets", "description": "Player bet submission and resynchronisation"},
    {"name": "Accounts", "description": "Balances and transaction history"},
    {"name": "Administration", "description": "Round lifecycle, rooms and manual token transactions"},
    {"name": "Health", "description": "Service health"},
]

def _error_codes() -> List[str]:
    return sorted(v for k, v in vars(ErrorCodes).items() if k.isupper())

def _codes_by_status() -> Dict[int, List[str]]:
    grouped = defaultdict(list)
    for code, status in list(HTTP_STATUS.items()) + [(c, s) for s, c in HTTP_EXCEPTION_CODES.items()]:
        if code not in grouped[status]:
            grouped[status].append(code)
    return grouped

def _error_schemas() -> Dict[str, Any]:
    """The envelope and its detail, generated from the response models."""
    envelope = StandardErrorResponse.model_json_schema(ref_template=REF_TEMPLATE)
    schemas = envelope.pop("$defs", {})
    schemas["ErrorResponse"] = envelope
    schemas["ErrorDetail"]["properties"]["code"]["enum"] = _error_codes()
    return schemas

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(title=title, version=version, description=description, routes=app.routes)

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "JWT with `sub` (account or admin id) and `role` (`admin` | `player`)",
        }
    }
    components.setdefault("schemas", {}).update(_error_schemas())

    content = {"application/json": {"schema": {"$ref": REF_TEMPLATE.format(model="ErrorResponse")}}}
    error_responses = {
        str(status): {"description": ", ".join(codes), "content": content}
        for status, codes in sorted(_codes_by_status().items())
    }
    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for status, response in error_responses.items():
                    operation["responses"].setdefault(status, response)

    openapi_schema["tags"] = TAGS
    app.openapi_schema = openapi_schema
    return app.openapi_schema

SERVICE_DOCS = """
## Andar Bahar round service

Admin-driven betting rounds against a shared token ledger.

### Round lifecycle
`OPEN/FIRST_BET` → (`setPhase`) → `CLOSED` → `declareWinner` → settlement →
next sequence `OPEN`. All transitions are explicit admin actions; any
countdown shown to players is cosmetic.

### Money movement
- Bets are debited in the same database transaction that records them.
- Settlement pays `2 × stake` on the winning side, all-or-nothing, once per round.
- Writes accept `request_id`; replays return the original result.

### Realtime
`/ws/rooms/{room_id}` and `/ws/accounts/{account_id}` send a snapshot on
connect, then ordered change events. The feed is a liveness aid; re-fetch the
snapshot after any reconnect.
"""
