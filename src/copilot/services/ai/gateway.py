from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

from src.copilot.config import settings
from src.copilot.domain.models.conversation_session import Message, MessageRole
from src.copilot.services.parsing.response_parser import END_MARKER, START_MARKER


class AIErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    RATE_LIMITED = "RateLimited"
    UNAUTHORIZED = "Unauthorized"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    UNKNOWN = "Unknown"


class AIGatewayError(Exception):
    """Typed failure from an AI gateway.

    ``retry_safe`` is only true when the failure provably happened before any
    response bytes were received, so resending cannot duplicate work.
    """

    def __init__(self, kind: AIErrorKind, message: str = "", *, retry_safe: bool = False) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.retry_safe = retry_safe


@dataclass(frozen=True)
class AIReply:
    text: str


class AIGateway(Protocol):
    """Protocol for language-model backends used by the conversation engine."""

    def send(self, prompt: str, history: Sequence[Message], *, timeout: float) -> AIReply:  # pragma: no cover - interface
        """Send the system prompt plus the chat history and return the reply text."""
        raise NotImplementedError


class DemoAIGateway:
    """Deterministic offline gateway used for tests and local development.

    On the first user turn it asks a clarifying question; afterwards it
    proposes a small outline about the topic named in the first message.
    """

    _TOPIC = re.compile(r"\b(?:course|class|curriculum)\s+(?:on|about|for)\s+(?P<topic>[^.?!\n]+)", re.IGNORECASE)

    def send(self, prompt: str, history: Sequence[Message], *, timeout: float) -> AIReply:
        user_messages = [m.content for m in history if m.role == MessageRole.USER]
        if not user_messages:
            return AIReply(text="What would you like your course to be about?")
        if len(user_messages) == 1:
            return AIReply(
                text="Great idea! Who is the target audience, and roughly how long should the course be?"
            )

        match = self._TOPIC.search(user_messages[0])
        topic = (match.group("topic") if match else user_messages[0]).strip().rstrip(".") or "Your Topic"
        structure = {
            "title": f"Introduction to {topic}",
            "description": f"A practical introduction to {topic}.",
            "sections": [
                {
                    "title": "Getting Started",
                    "description": f"Foundations of {topic}.",
                    "lessons": [
                        {"title": f"What is {topic}?", "content": f"<p>An overview of {topic}.</p>"},
                        {"title": "Setting Up", "content": "<p>Preparing your environment.</p>"},
                    ],
                },
                {
                    "title": "Core Concepts",
                    "description": f"The essential ideas behind {topic}.",
                    "lessons": [
                        {"title": "Key Principles", "content": "<p>The principles you will use daily.</p>"},
                        {"title": "Hands-on Practice", "content": "<p>A guided exercise.</p>"},
                    ],
                },
            ],
        }
        return AIReply(
            text=(
                "Here is a proposed course structure:\n"
                f"{START_MARKER}\n{json.dumps(structure, indent=2)}\n{END_MARKER}\n"
                "Let me know if you would like any changes."
            )
        )


class OpenAIGateway:
    """Gateway backed by the OpenAI Responses API.

    The client is created with ``max_retries=0`` so the conversation engine's
    retry policy is the only retry layer. Requires OPENAI_API_KEY.
    """

    def __init__(self, model: Optional[str] = None, api_key: Optional[str] = None) -> None:
        self._model = model or settings.llm_model
        self._api_key = api_key or settings.openai_api_key
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self._api_key:
                raise AIGatewayError(AIErrorKind.UNAUTHORIZED, "OPENAI_API_KEY must be set to use OpenAIGateway")
            try:
                from openai import OpenAI
            except ImportError as exc:
                raise RuntimeError(
                    "OpenAIGateway requires the 'openai' package. Install it with 'pip install openai'"
                ) from exc
            self._client = OpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    def send(self, prompt: str, history: Sequence[Message], *, timeout: float) -> AIReply:  # pragma: no cover - external service
        import openai

        client = self._get_client()
        conversation = [
            {"role": m.role.value, "content": m.content}
            for m in history
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ]
        try:
            response = client.responses.create(
                model=self._model,
                instructions=prompt,
                input=conversation,
                timeout=timeout,
            )
        except openai.APITimeoutError as exc:
            # The request may have reached the model; not provably side-effect free.
            raise AIGatewayError(AIErrorKind.TIMEOUT, str(exc)) from exc
        except openai.APIConnectionError as exc:
            raise AIGatewayError(AIErrorKind.SERVICE_UNAVAILABLE, str(exc), retry_safe=True) from exc
        except openai.RateLimitError as exc:
            raise AIGatewayError(AIErrorKind.RATE_LIMITED, str(exc)) from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise AIGatewayError(AIErrorKind.UNAUTHORIZED, str(exc)) from exc
        except openai.InternalServerError as exc:
            raise AIGatewayError(AIErrorKind.SERVICE_UNAVAILABLE, str(exc)) from exc
        except openai.APIError as exc:
            raise AIGatewayError(AIErrorKind.UNKNOWN, str(exc)) from exc

        text = getattr(response, "output_text", None)
        if not text:
            for output in response.output:
                for item in getattr(output, "content", None) or []:
                    if getattr(item, "type", "") == "output_text" and getattr(item, "text", None):
                        text = item.text
                        break
                if text:
                    break
        if not text:
            raise AIGatewayError(AIErrorKind.UNKNOWN, "Response contained no text output")
        return AIReply(text=text)


demo_ai_gateway = DemoAIGateway()


def get_ai_gateway_from_env() -> AIGateway:
    """Select an AI gateway based on the AI_BACKEND setting.

    - AI_BACKEND=openai → OpenAIGateway
    - Anything else (or unset) → DemoAIGateway
    """

    backend_name = settings.ai_backend.lower()
    if backend_name == "openai":
        return OpenAIGateway()
    return demo_ai_gateway
