"""FastAPI frontend exposing the Sparify balance protocol as JSON endpoints.

Authentication lives with an external provider, so the signed-in user id is
passed in the path.  Run with ``uvicorn --factory sparify.webapp:create_app``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import load_settings
from ..exceptions import (
    AccessDeniedError,
    BalancePersistError,
    DecryptionError,
    GoalNotFoundError,
    InvalidTransactionError,
    LoadTimeoutError,
    PiggyBankNotFoundError,
    RetrievalError,
    WatermarkConflictError,
)
from ..loader import LoadMode
from ..models import GoalView, PiggyBankCollection, PiggyBankView, Transaction
from ..service import Sparify


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class EntryIn(BaseModel):
    title: str = ""
    amount: Decimal
    type: str = "deposit"


class TransactionsIn(BaseModel):
    entries: List[EntryIn] = Field(min_length=1)


class CodeIn(BaseModel):
    code: str


class CreditIn(BaseModel):
    amount: Decimal
    title: str = "Admin credit"


class DetailsIn(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class GoalIn(BaseModel):
    title: str
    target_amount: Decimal
    saved_amount: Decimal = Decimal("0")
    allocation_percent: int = Field(default=0, ge=0, le=100)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------
def _transaction_json(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "title": transaction.title,
        "amount": str(transaction.amount),
        "type": transaction.type.value,
        "created_at": transaction.created_at.isoformat(),
    }


def _goal_json(goal: GoalView) -> Dict[str, Any]:
    return {
        "id": goal.id,
        "title": goal.title,
        "target_amount": str(goal.target_amount),
        "saved_amount": str(goal.saved_amount),
        "allocation_percent": goal.allocation_percent,
        "readable": goal.readable,
    }


def _view_json(view: PiggyBankView) -> Dict[str, Any]:
    return {
        "id": view.id,
        "name": view.name,
        "color": view.color,
        "role": view.role.value,
        "balance": str(view.balance),
        "balance_status": view.balance_status.value,
        "connected_on": view.connected_on.isoformat(),
        "history": [{"day": point.day.isoformat(), "balance": str(point.balance)} for point in view.history],
        "transactions": [_transaction_json(tx) for tx in view.transactions],
        "goals": [_goal_json(goal) for goal in view.goals],
        "lock_state": view.lock_state,
        "features": dict(view.features),
        "stale": view.stale,
    }


def _collection_json(collection: PiggyBankCollection) -> Dict[str, Any]:
    return {
        "owned": [_view_json(view) for view in collection.owned],
        "guest": [_view_json(view) for view in collection.guest],
        "total_balance": str(collection.total_balance),
        "stale": collection.stale,
    }


def _error(status_code: int, kind: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": kind, "detail": message, **extra}, status_code=status_code)


# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
def create_app(service: Optional[Sparify] = None) -> FastAPI:
    """Build the app around ``service`` (built from the environment when omitted)."""

    sparify = service or Sparify.from_settings(load_settings())

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await sparify.close()

    app = FastAPI(title="Sparify", lifespan=lifespan)
    app.state.sparify = sparify

    @app.exception_handler(PiggyBankNotFoundError)
    async def _not_found(request: Request, exc: PiggyBankNotFoundError) -> JSONResponse:
        return _error(404, "not_found", str(exc))

    @app.exception_handler(GoalNotFoundError)
    async def _goal_not_found(request: Request, exc: GoalNotFoundError) -> JSONResponse:
        return _error(404, "goal_not_found", str(exc))

    @app.exception_handler(AccessDeniedError)
    async def _denied(request: Request, exc: AccessDeniedError) -> JSONResponse:
        return _error(403, "access_denied", str(exc))

    @app.exception_handler(InvalidTransactionError)
    async def _invalid(request: Request, exc: InvalidTransactionError) -> JSONResponse:
        return _error(422, "invalid_transaction", str(exc))

    @app.exception_handler(DecryptionError)
    async def _unreadable(request: Request, exc: DecryptionError) -> JSONResponse:
        return _error(409, "balance_unreadable", str(exc))

    @app.exception_handler(WatermarkConflictError)
    async def _conflict(request: Request, exc: WatermarkConflictError) -> JSONResponse:
        return _error(409, "sync_conflict", str(exc))

    @app.exception_handler(LoadTimeoutError)
    async def _timeout(request: Request, exc: LoadTimeoutError) -> JSONResponse:
        return _error(504, "timeout", str(exc))

    @app.exception_handler(RetrievalError)
    async def _unavailable(request: Request, exc: RetrievalError) -> JSONResponse:
        return _error(503, "unavailable", str(exc))

    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError) -> JSONResponse:
        return _error(422, "invalid_request", str(exc))

    @app.exception_handler(BalancePersistError)
    async def _unsaved(request: Request, exc: BalancePersistError) -> JSONResponse:
        return JSONResponse({"balance": str(exc.total), "persisted": False}, status_code=202)

    @app.get("/users/{user_id}/piggy-banks")
    async def dashboard(user_id: str, sync: bool = False) -> JSONResponse:
        collection = await sparify.load_dashboard(user_id, mode=LoadMode.SYNC if sync else LoadMode.FAST)
        return JSONResponse(_collection_json(collection))

    @app.get("/users/{user_id}/piggy-banks/{piggy_bank_id}")
    async def piggy_bank_detail(user_id: str, piggy_bank_id: str, sync: bool = True) -> JSONResponse:
        view = await sparify.load_piggy_bank(
            user_id, piggy_bank_id, mode=LoadMode.SYNC if sync else LoadMode.FAST
        )
        return JSONResponse(_view_json(view))

    @app.post("/users/{user_id}/piggy-banks/{piggy_bank_id}/sync")
    async def sync_balance(user_id: str, piggy_bank_id: str) -> JSONResponse:
        if await sparify.role_for(user_id, piggy_bank_id) is None:
            raise AccessDeniedError(f"User '{user_id}' has no access to piggy bank '{piggy_bank_id}'.")
        balance = await sparify.sync_balance(piggy_bank_id)
        return JSONResponse({"balance": str(balance), "persisted": True})

    @app.post("/users/{user_id}/piggy-banks/{piggy_bank_id}/transactions")
    async def add_transactions(user_id: str, piggy_bank_id: str, body: TransactionsIn) -> JSONResponse:
        entries = [entry.model_dump() for entry in body.entries]
        balance = await sparify.record_transactions(user_id, piggy_bank_id, entries)
        return JSONResponse({"balance": str(balance), "persisted": True}, status_code=201)

    @app.patch("/users/{user_id}/piggy-banks/{piggy_bank_id}")
    async def update_details(user_id: str, piggy_bank_id: str, body: DetailsIn) -> JSONResponse:
        record = await sparify.update_details(user_id, piggy_bank_id, name=body.name, color=body.color)
        return JSONResponse({"id": record.id, "name": record.name, "color": record.color})

    @app.delete("/users/{user_id}/piggy-banks/{piggy_bank_id}")
    async def remove_piggy_bank(user_id: str, piggy_bank_id: str) -> JSONResponse:
        role = await sparify.remove_piggy_bank(user_id, piggy_bank_id)
        return JSONResponse({"removed": piggy_bank_id, "role": role.value})

    @app.post("/users/{user_id}/claims")
    async def claim(user_id: str, body: CodeIn) -> JSONResponse:
        record = await sparify.claim_piggy_bank(user_id, body.code)
        return JSONResponse({"id": record.id, "name": record.name}, status_code=201)

    @app.post("/users/{user_id}/piggy-banks/{piggy_bank_id}/guest-codes")
    async def guest_code(user_id: str, piggy_bank_id: str) -> JSONResponse:
        code = await sparify.create_guest_code(user_id, piggy_bank_id)
        return JSONResponse({"code": code}, status_code=201)

    @app.delete("/users/{user_id}/piggy-banks/{piggy_bank_id}/guests")
    async def remove_guests(user_id: str, piggy_bank_id: str) -> JSONResponse:
        removed = await sparify.remove_all_guests(user_id, piggy_bank_id)
        return JSONResponse({"removed": removed})

    @app.get("/users/{user_id}/piggy-banks/{piggy_bank_id}/activity")
    async def activity(user_id: str, piggy_bank_id: str) -> JSONResponse:
        events, credited = await sparify.activity(user_id, piggy_bank_id)
        return JSONResponse({"events": [event.as_dict() for event in events], "admin_credited": str(credited)})

    @app.post("/users/{user_id}/guest-grants")
    async def join(user_id: str, body: CodeIn) -> JSONResponse:
        record = await sparify.join_as_guest(user_id, body.code)
        return JSONResponse({"id": record.id, "name": record.name}, status_code=201)

    @app.post("/users/{user_id}/credits")
    async def admin_credit(user_id: str, body: CreditIn) -> JSONResponse:
        balance = await sparify.admin_add_money(user_id, body.amount, title=body.title)
        return JSONResponse({"balance": str(balance), "persisted": True}, status_code=201)

    @app.post("/users/{user_id}/piggy-banks/{piggy_bank_id}/goals")
    async def add_goal(user_id: str, piggy_bank_id: str, body: GoalIn) -> JSONResponse:
        goal = await sparify.add_goal(
            user_id,
            piggy_bank_id,
            body.title,
            body.target_amount,
            saved_amount=body.saved_amount,
            allocation_percent=body.allocation_percent,
        )
        return JSONResponse(_goal_json(goal), status_code=201)

    @app.put("/users/{user_id}/piggy-banks/{piggy_bank_id}/goals/{goal_id}")
    async def update_goal(user_id: str, piggy_bank_id: str, goal_id: str, body: GoalIn) -> JSONResponse:
        goal = await sparify.update_goal(
            user_id,
            piggy_bank_id,
            goal_id,
            body.title,
            body.target_amount,
            saved_amount=body.saved_amount,
            allocation_percent=body.allocation_percent,
        )
        return JSONResponse(_goal_json(goal))

    @app.delete("/users/{user_id}/piggy-banks/{piggy_bank_id}/goals/{goal_id}")
    async def delete_goal(user_id: str, piggy_bank_id: str, goal_id: str) -> JSONResponse:
        deleted = await sparify.delete_goal(user_id, piggy_bank_id, goal_id)
        return JSONResponse({"deleted": deleted})

    return app


__all__ = ["create_app"]
