"""HTTP gateway in front of the agent process.

Authenticates callers, stores their AWS credentials, and forwards chat and workflow
requests to the agent process with those credentials attached as ``X-AWS-*`` headers.
"""

import logging
import uuid
from typing import Literal

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import DEFAULT_REGION, Settings, load_settings
from ..context import USER_ID_HEADER, credential_headers
from ..templates import utc_now_iso
from .auth import AuthContext, AuthenticationRequired, get_auth, require_auth
from .credential_store import CredentialRecord, CredentialStore, InMemoryCredentialStore

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_SECONDS = 5.0
FORWARD_TIMEOUT_SECONDS = 300.0
VERSION = "1.0.0"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(min_length=1)


class ChatRequest(BaseModel):
    agentName: str = Field(min_length=1)
    messages: list[ChatMessage] = Field(min_length=1)
    threadId: str | None = None
    runId: str | None = None
    maxRetries: int = Field(default=2, ge=0, le=10)
    maxSteps: int = Field(default=5, ge=1, le=20)
    temperature: float = Field(default=0.5, ge=0, le=2)
    topP: float = Field(default=1, ge=0, le=1)
    resourceId: str | None = None


class AwsDataRequest(BaseModel):
    key_id: str = Field(min_length=1)
    access_key: str = Field(min_length=1)
    region: str | None = DEFAULT_REGION
    session_token: str | None = None


def create_app(
    settings: Settings | None = None,
    store: CredentialStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    app = FastAPI(title="CloudFormation Agent Gateway")
    app.state.settings = settings or load_settings()
    app.state.store = store if store is not None else InMemoryCredentialStore()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def agent_client(timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=app.state.settings.agent_url, timeout=timeout, transport=transport
        )

    def forward_headers(auth: AuthContext) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "*/*"}
        if auth.user_id:
            headers[USER_ID_HEADER] = auth.user_id
        record = app.state.store.get(auth.user_id) if auth.user_id else None
        if record:
            headers.update(credential_headers(record.credentials(), record.region))
        else:
            logger.info("No stored AWS credentials for %s, forwarding without them", auth.user_id)
        return headers

    @app.exception_handler(AuthenticationRequired)
    async def auth_required_handler(request: Request, exc: AuthenticationRequired):
        return JSONResponse(
            status_code=401, content={"status": "error", "error": "Authentication required"}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "status": "error",
                "error": "Validation error",
                "details": jsonable_encoder(exc.errors()),
                "success": False,
            },
        )

    @app.get("/")
    def root(auth: AuthContext = Depends(get_auth)):
        return {
            "status": "ok",
            "message": "CloudFormation agent gateway",
            "version": VERSION,
            "timestamp": utc_now_iso(),
            "auth": auth.to_dict(),
        }

    @app.get("/health")
    async def health():
        agent_url = app.state.settings.agent_url
        try:
            async with agent_client(HEALTH_TIMEOUT_SECONDS) as client:
                response = await client.get("/health")
            healthy = response.is_success
        except httpx.HTTPError as e:
            logger.warning("Agent process health check failed: %s", e)
            healthy = False

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "service": "cfn-agent-gateway",
                "timestamp": utc_now_iso(),
                "dependencies": {
                    "agent": {
                        "status": "connected" if healthy else "disconnected",
                        "url": agent_url,
                    }
                },
            },
        )

    @app.get("/api/aws-data")
    def get_aws_data(auth: AuthContext = Depends(require_auth)):
        record = app.state.store.get(auth.user_id)
        if record is None:
            return {"status": "success", "data": None, "message": "No AWS data found for user"}
        return {
            "status": "success",
            "data": record.public_dict(),
            "message": "AWS data retrieved successfully",
        }

    @app.get("/api/aws-data/status")
    def aws_data_status(auth: AuthContext = Depends(require_auth)):
        has_data = app.state.store.has(auth.user_id)
        message = "User has AWS data configured" if has_data else "No AWS data found for user"
        return {"status": "success", "hasAWSData": has_data, "message": message}

    @app.post("/api/aws-data", status_code=201)
    def save_aws_data(body: AwsDataRequest, auth: AuthContext = Depends(require_auth)):
        record = app.state.store.upsert(
            CredentialRecord(
                user_id=auth.user_id,
                key_id=body.key_id,
                access_key=body.access_key,
                region=body.region or DEFAULT_REGION,
                session_token=body.session_token,
            )
        )
        logger.info("Stored AWS credentials %s... for %s", body.key_id[:8], auth.user_id)
        return {
            "status": "success",
            "data": record.public_dict(),
            "message": "AWS data saved successfully",
        }

    @app.delete("/api/aws-data")
    def delete_aws_data(auth: AuthContext = Depends(require_auth)):
        deleted = app.state.store.delete(auth.user_id)
        message = "AWS data deleted successfully" if deleted else "No AWS data found for user"
        return {"status": "success", "deleted": deleted, "message": message}

    @app.post("/api/chat")
    async def chat(body: ChatRequest, auth: AuthContext = Depends(require_auth)):
        thread_id = body.threadId or str(uuid.uuid4())
        run_id = body.runId or body.agentName
        payload = {
            "messages": [m.model_dump() for m in body.messages],
            "runId": run_id,
            "maxRetries": body.maxRetries,
            "maxSteps": body.maxSteps,
            "temperature": body.temperature,
            "topP": body.topP,
            "threadId": thread_id,
            "resourceId": body.resourceId or auth.user_id,
        }
        try:
            async with agent_client(FORWARD_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    f"/api/agents/{body.agentName}/generate",
                    json=payload,
                    headers=forward_headers(auth),
                )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Chat with %s failed: %s", body.agentName, e)
            return JSONResponse(
                status_code=500,
                content={
                    "status": "error",
                    "error": "Failed to communicate with agent",
                    "message": str(e),
                    "success": False,
                },
            )

        message = (
            data.get("message") or data.get("content") or data.get("text")
            or "No response received from agent"
        )
        return {
            "status": "success",
            "message": message,
            "threadId": thread_id,
            "runId": run_id,
            "success": True,
            "agentName": body.agentName,
            "timestamp": utc_now_iso(),
        }

    @app.post("/api/cfn/operations")
    async def cfn_operations(body: dict, auth: AuthContext = Depends(require_auth)):
        try:
            async with agent_client(FORWARD_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    "/api/workflows/cfn-operations", json=body, headers=forward_headers(auth)
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("CloudFormation workflow forward failed: %s", e)
            return JSONResponse(
                status_code=500,
                content={"status": "error", "error": "Failed to communicate with agent", "message": str(e)},
            )
        return JSONResponse(status_code=response.status_code, content=data)

    return app
