# -*- coding: utf-8 -*-
"""
HTTP surface for the trial controller and the consensus coordinator.

Usage:
    from mcmcp import TrialController, ConsensusCoordinator, load_config
    from mcmcp.api import create_app

    controller = TrialController(load_config("experiment.yaml"))
    app = create_app(controller, ConsensusCoordinator(controller))
    # uvicorn module:app --port 8000

Participant identity and chain routing travel in headers (ID, current_class,
current_chain, ...), choices in the JSON body.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .consensus import FINISHED, NOT_READY, ConsensusCoordinator
from .controller import TrialController
from .errors import (
    DimensionMismatchError,
    GatekeeperRejectionLoop,
    PersistenceError,
    TurnViolationError,
)

logger = logging.getLogger(__name__)


class NamesRequest(BaseModel):
    names: str


class ChoiceRequest(BaseModel):
    choice: Any
    current_state: Optional[List[float]] = None


class AttentionRequest(BaseModel):
    result: Union[bool, str]


def _passed(result: Union[bool, str]) -> bool:
    if isinstance(result, bool):
        return result
    return result.strip().lower() in {"success", "pass", "passed", "true", "1"}


def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


def create_app(controller: TrialController, coordinator: Optional[ConsensusCoordinator] = None) -> FastAPI:
    app = FastAPI(
        title="MCMCP engine",
        version="0.1.0",
        description="Markov Chain Monte Carlo with People: trial routing and choice registration.",
    )

    # ------------------------------------------------------------------- errors
    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError):
        logger.error("persistence failure on %s: %s", request.url.path, exc)
        return _error(503, exc)

    @app.exception_handler(DimensionMismatchError)
    async def _dimension(request: Request, exc: DimensionMismatchError):
        return _error(400, exc)

    @app.exception_handler(ValueError)
    async def _value(request: Request, exc: ValueError):
        return _error(400, exc)

    @app.exception_handler(TurnViolationError)
    async def _turn(request: Request, exc: TurnViolationError):
        return _error(409, exc)

    @app.exception_handler(GatekeeperRejectionLoop)
    async def _loop(request: Request, exc: GatekeeperRejectionLoop):
        logger.error("%s", exc)
        return _error(500, exc)

    # ---------------------------------------------------------------- trials
    @app.post("/api/set_up")
    def set_up(body: NamesRequest) -> Dict[str, Any]:
        return controller.set_up(body.names)

    @app.get("/api/next-trial")
    def next_trial(
        participant: str = Header(..., alias="ID"),
        current_class: Optional[str] = Header(None, convert_underscores=False),
        current_chain: Optional[int] = Header(None, convert_underscores=False),
    ) -> Dict[str, Any]:
        return controller.next_trial(participant, category=current_class, chain_index=current_chain)

    @app.post("/api/register-choice")
    def register_choice(
        body: ChoiceRequest,
        participant: str = Header(..., alias="ID"),
        trial_type: str = Header(..., convert_underscores=False),
        current_chain: int = Header(..., convert_underscores=False),
        current_class: Optional[str] = Header(None, convert_underscores=False),
        n_trial: Optional[int] = Header(None, convert_underscores=False),
    ) -> Dict[str, Any]:
        return controller.register_choice(
            participant,
            trial_type,
            body.choice,
            chain_index=current_chain,
            category=current_class,
            trial_index=n_trial,
        )

    @app.post("/api/register-attention")
    def register_attention(body: AttentionRequest, participant: str = Header(..., alias="ID")) -> Dict[str, Any]:
        return controller.register_attention(participant, _passed(body.result))

    # ------------------------------------------------------------- consensus
    def _coordinator() -> ConsensusCoordinator:
        if coordinator is None:
            raise HTTPException(status_code=404, detail="consensus chains are not enabled")
        return coordinator

    @app.post("/api/consensus/join")
    def consensus_join(body: NamesRequest) -> Dict[str, Any]:
        return _coordinator().join(body.names)

    @app.get("/api/consensus/waiting-room")
    def consensus_waiting_room(team_id: int = Header(..., convert_underscores=False)) -> Dict[str, int]:
        return _coordinator().waiting_room(team_id)

    @app.get("/api/consensus/next-trial")
    def consensus_next_trial(
        response: Response,
        participant: str = Header(..., alias="ID"),
        team_id: int = Header(..., convert_underscores=False),
        current_class: str = Header(..., convert_underscores=False),
        current_chain: int = Header(..., convert_underscores=False),
    ):
        result = _coordinator().poll(participant, team_id, current_class, current_chain)
        if result["status"] == NOT_READY:
            return Response(status_code=204, headers={"Retry-After": f"{result['retry_after']:g}"})
        if result["status"] == FINISHED:
            response.status_code = 201
            return {"status": FINISHED}
        return result

    @app.post("/api/consensus/register-choice")
    def consensus_register_choice(
        body: ChoiceRequest,
        participant: str = Header(..., alias="ID"),
        team_id: int = Header(..., convert_underscores=False),
        current_class: str = Header(..., convert_underscores=False),
        current_chain: int = Header(..., convert_underscores=False),
    ) -> Dict[str, Any]:
        return _coordinator().register(participant, team_id, current_class, current_chain, int(body.choice))

    return app
