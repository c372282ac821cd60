from abc import ABC, abstractmethod
from typing import Optional

import httpx

from supervisor_desk.core.database import utcnow
from supervisor_desk.core.exceptions import DependencyError
from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import HelpRequest

logger = get_plain_logger(__name__)


class Notifier(ABC):
    """
    Side channel to the supervisor and to callers

    All calls are best effort: the coordinator catches and logs whatever an
    implementation raises, so a failed notification never undoes a committed
    state change.
    """

    @abstractmethod
    async def notify_human(self, request: HelpRequest):
        """Tell a supervisor a new help request is waiting"""

    @abstractmethod
    async def notify_caller_resolved(self, caller_id: str, question: str, answer: str):
        """Send the supervisor's answer back to the caller"""

    @abstractmethod
    async def notify_caller_timed_out(self, caller_id: str, question: str):
        """Let the caller know their question is taking longer than expected"""


class LoggingNotifier(Notifier):
    """
    Simulated notifications via console log
    In production: SMS, push notification, or the webhook notifier below
    """

    async def notify_human(self, request: HelpRequest):
        message = f"""
        🔔 NEW HELP REQUEST #{request.id}
        Question: {request.question}
        Caller: {request.caller_name or request.caller_id}
        Session: {request.session_id}
        Respond before: {request.timeout_at.strftime('%I:%M %p')}

        → View in admin panel to respond
        """
        logger.warning(message)

    async def notify_caller_resolved(self, caller_id: str, question: str, answer: str):
        message = f"""
        📱 FOLLOW-UP TO CUSTOMER
        To: {caller_id}

        "Hi! You asked: '{question}'

        Here's the answer: {answer}

        Feel free to call us if you have any other questions!"
        """
        logger.info(message)

    async def notify_caller_timed_out(self, caller_id: str, question: str):
        message = f"""
        ⏰ DELAY NOTICE TO CUSTOMER
        To: {caller_id}
        Question: {question}
        Message: We're still working on your question. We'll get back to you soon.
        """
        logger.info(message)


class WebhookNotifier(Notifier):
    """
    Posts each notification as JSON to a webhook (Slack/Teams relay, SMS gateway)

    Transport failures and non-2xx responses raise DependencyError.
    """

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def _post(self, payload: dict):
        payload["sent_at"] = utcnow().isoformat()
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DependencyError(f"{payload['event']} webhook failed: {e}", dependency="webhook") from e

    async def notify_human(self, request: HelpRequest):
        await self._post({
            "event": "help_request.created",
            "request_id": request.id,
            "question": request.question,
            "caller_id": request.caller_id,
            "caller_name": request.caller_name,
            "session_id": request.session_id,
            "timeout_at": request.timeout_at.isoformat(),
        })

    async def notify_caller_resolved(self, caller_id: str, question: str, answer: str):
        await self._post({
            "event": "help_request.resolved",
            "caller_id": caller_id,
            "question": question,
            "answer": answer,
        })

    async def notify_caller_timed_out(self, caller_id: str, question: str):
        await self._post({
            "event": "help_request.timeout",
            "caller_id": caller_id,
            "question": question,
        })
