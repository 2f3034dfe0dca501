"""
AI Agent Client — Asks the conversational agent to send the next follow-up.

The agent owns message generation and channel delivery; the engine only
tells it which lead to contact and at which step:

    POST {base_url}{execute_path}
    {"lead_id": "...", "tenant_id": "...", "context": "follow_up",
     "metadata": {"step_number": 2}}

    → {"success": true, "messages_sent": 1}
    → {"success": false, "error": "instance disconnected"}

Every failure is reported as an unsuccessful SendResult; the orchestrator
treats it as transient and lets the queue retry.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import AgentConfig, get_settings
from models.schemas import AgentRequest, SendResult

logger = structlog.get_logger()


class AgentSender(abc.ABC):
    """Abstract base for the follow-up send path."""

    @abc.abstractmethod
    async def execute(self, request: AgentRequest) -> SendResult:
        """Generate and deliver one follow-up message for the lead."""
        ...

    async def close(self):
        pass


class HttpAgentSender(AgentSender):
    """Calls the agent service over HTTP."""

    def __init__(self, config: AgentConfig = None):
        self.config = config or get_settings().agent
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(self.config.execute_path, json=payload)
        response.raise_for_status()
        return response.json()

    async def execute(self, request: AgentRequest) -> SendResult:
        try:
            body = await self._post(request.model_dump())
        except Exception as e:
            logger.error("agent_execute_failed",
                         lead_id=request.lead_id,
                         tenant_id=request.tenant_id,
                         error=str(e))
            return SendResult(success=False, error=str(e) or type(e).__name__)

        result = SendResult(
            success=bool(body.get("success", False)),
            error=body.get("error"),
            messages_sent=int(body.get("messages_sent", 0) or 0),
        )
        if not result.success and not result.error:
            result.error = "Agent reported failure without a reason"
        logger.info("agent_execute_completed",
                    lead_id=request.lead_id,
                    success=result.success,
                    messages_sent=result.messages_sent)
        return result

    async def close(self):
        if self.client:
            await self.client.aclose()


class LoggingAgentSender(AgentSender):
    """
    Development sender: records the request in the log and reports success.
    Used when no agent base_url is configured.
    """

    def __init__(self):
        self.requests: list[AgentRequest] = []

    async def execute(self, request: AgentRequest) -> SendResult:
        self.requests.append(request)
        logger.info("logging_agent_execute",
                    lead_id=request.lead_id,
                    tenant_id=request.tenant_id,
                    context=request.context,
                    metadata=request.metadata)
        return SendResult(success=True, messages_sent=1)


def create_agent_sender(config: AgentConfig = None) -> AgentSender:
    """Factory function to create the configured agent sender."""
    config = config or get_settings().agent
    if config.base_url:
        return HttpAgentSender(config)
    logger.warning("using_logging_agent_sender", reason="agent base_url empty")
    return LoggingAgentSender()
