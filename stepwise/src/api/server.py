import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from stepwise.src.orchestrator.service import Orchestrator
from stepwise.src.utils.errors import McpConnectionError, ParsingError, ProtocolError
from stepwise.src.utils.models import FsmSnapshot, Step

load_dotenv()

logger = logging.getLogger("stepwise.api")

_orchestrator: Optional[Orchestrator] = None


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if _orchestrator is not None:
        _orchestrator.close()


app = FastAPI(lifespan=lifespan, title="Stepwise", description="Human-confirmed browser automation over Playwright MCP")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv("STEPWISE_CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SessionRequest(BaseModel):
    instruction: str


class ConfirmRequest(BaseModel):
    step_id: Optional[str] = None


class SessionResponse(BaseModel):
    steps: List[Step]
    status: FsmSnapshot


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator


@app.get("/")
def root():
    return {"message": "Stepwise orchestrator is running"}


@app.post("/api/session", response_model=SessionResponse)
def start_session(request: SessionRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    instruction = request.instruction.strip()
    if not instruction:
        raise HTTPException(status_code=400, detail="Instruction cannot be empty")
    try:
        steps = orchestrator.start_session(instruction)
    except ParsingError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (McpConnectionError, ProtocolError) as exc:
        logger.error("Automation server unavailable: %s", exc)
        raise HTTPException(status_code=502, detail=f"Automation server unavailable: {exc}") from exc
    return SessionResponse(steps=steps, status=orchestrator.get_status())


@app.post("/api/session/confirm", response_model=FsmSnapshot)
def confirm_step(request: Optional[ConfirmRequest] = None, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.confirm_step(request.step_id if request else None)


@app.post("/api/session/reject", response_model=FsmSnapshot)
def reject_steps(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.reject_steps()


@app.post("/api/session/cancel", response_model=FsmSnapshot)
def cancel_session(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.cancel_session()


@app.post("/api/session/reset", response_model=FsmSnapshot)
def reset_session(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.reset()


@app.get("/api/session/status", response_model=FsmSnapshot)
def get_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.get_status()


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    uvicorn.run(app, host=os.getenv("STEPWISE_HOST", "0.0.0.0"), port=int(os.getenv("STEPWISE_PORT", "8000")))


if __name__ == "__main__":
    main()
