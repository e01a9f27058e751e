from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from stemflow.core.models import (
    HttpRequest,
    Message,
    MessageContent,
    RequestOptions,
    Response,
)
from stemflow.llm.errors import UnsupportedModelError

OPENAI_API_URL = "https://api.openai.com/v1"
ANTHROPIC_API_URL = "https://api.anthropic.com/v1"
GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta"

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 1024
SUPPORTED_ANTHROPIC_MODELS: tuple[str, ...] = (
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-7-sonnet-20250219",
    "claude-3-haiku-20240307",
    "claude-sonnet-4-20250514",
    "claude-opus-4-20250514",
)

_SYSTEM_SEPARATOR = "\n\n"
_JSON_HEADERS = {"Content-Type": "application/json"}


class ProviderAdapter(Protocol):
    def build_request(self, options: RequestOptions, *, base_url: Optional[str] = None) -> HttpRequest:
        ...

    def parse_response(self, payload: object) -> Response:
        ...


def _read_part_text(part: object) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, dict) and isinstance(part.get("text"), str):
        return part["text"]
    return ""


def _first(value: object) -> object:
    if isinstance(value, list) and value:
        return value[0]
    return None


def _model_of(payload: dict) -> str:
    model = payload.get("model")
    return model if isinstance(model, str) else "unknown"


def _normalize_base_url(base_url: Optional[str], default: str) -> str:
    if base_url and base_url.strip():
        return base_url.strip().rstrip("/")
    return default


@dataclass(frozen=True, slots=True)
class OpenAIAdapter:
    def build_request(self, options: RequestOptions, *, base_url: Optional[str] = None) -> HttpRequest:
        body: dict[str, Any] = {
            "model": options.model,
            "messages": [
                {"role": message.role, "content": self._content(message.content)}
                for message in options.messages
            ],
        }
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.stream is not None:
            body["stream"] = options.stream
        root = _normalize_base_url(base_url, OPENAI_API_URL)
        return HttpRequest(url=f"{root}/chat/completions", body=body, headers=dict(_JSON_HEADERS))

    def parse_response(self, payload: object) -> Response:
        if not isinstance(payload, dict):
            return Response(text="", finish_reason="error", model="unknown")

        model = _model_of(payload)
        choice = _first(payload.get("choices"))
        choice = choice if isinstance(choice, dict) else {}
        if isinstance(choice.get("finish_reason"), str):
            finish_reason = choice["finish_reason"]
        elif isinstance(payload.get("stop_reason"), str):
            finish_reason = payload["stop_reason"]
        else:
            finish_reason = "stop"

        text = self._extract_text(payload, choice)
        if text is None:
            return Response(text="", finish_reason="error", model=model)
        return Response(text=text, finish_reason=finish_reason, model=model)

    @staticmethod
    def _content(content: MessageContent) -> object:
        if isinstance(content, str):
            return content
        out: list[dict] = []
        for part in content:
            if part.type == "text":
                out.append({"type": "text", "text": part.text})
            else:
                out.append({"type": "image_url", "image_url": {"url": part.to_data_url()}})
        return out

    @staticmethod
    def _extract_text(payload: dict, choice: dict) -> Optional[str]:
        message = choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(_read_part_text(part) for part in content)
        if isinstance(choice.get("text"), str):
            return choice["text"]
        if isinstance(payload.get("output_text"), str):
            return payload["output_text"]

        # Responses-style, Gemini-style and Anthropic-style bodies from compatible gateways.
        fallback = (
            _output_array_text(payload.get("output"))
            or _candidates_text(payload.get("candidates"))
            or _content_blocks_text(payload.get("content"))
        )
        return fallback or None


def _output_array_text(output: object) -> str:
    if not isinstance(output, list):
        return ""
    chunks: list[str] = []
    for item in output:
        if not isinstance(item, dict) or not isinstance(item.get("content"), list):
            continue
        for block in item["content"]:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                chunks.append(block["text"])
    return "".join(chunks)


def _candidates_text(candidates: object) -> str:
    candidate = _first(candidates)
    if not isinstance(candidate, dict):
        return ""
    content = candidate.get("content")
    if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
        return ""
    return "".join(_read_part_text(part) for part in content["parts"])


def _content_blocks_text(content: object) -> str:
    if not isinstance(content, list):
        return ""
    return "".join(_read_part_text(block) for block in content)


@dataclass(frozen=True, slots=True)
class AnthropicAdapter:
    supported_models: tuple[str, ...] = SUPPORTED_ANTHROPIC_MODELS

    def build_request(self, options: RequestOptions, *, base_url: Optional[str] = None) -> HttpRequest:
        if options.model not in self.supported_models:
            raise UnsupportedModelError(f"Unsupported Anthropic model: {options.model}")

        system_texts = [
            self._system_text(message.content) for message in options.messages if message.role == "system"
        ]
        body: dict[str, Any] = {
            "model": options.model,
            "messages": [
                {"role": message.role, "content": self._content(message.content)}
                for message in options.messages
                if message.role != "system"
            ],
            "max_tokens": options.max_tokens if options.max_tokens is not None else ANTHROPIC_DEFAULT_MAX_TOKENS,
        }
        if system_texts:
            body["system"] = _SYSTEM_SEPARATOR.join(system_texts)
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.stream is not None:
            body["stream"] = options.stream

        root = _normalize_base_url(base_url, ANTHROPIC_API_URL)
        headers = dict(_JSON_HEADERS)
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return HttpRequest(url=f"{root}/messages", body=body, headers=headers)

    def parse_response(self, payload: object) -> Response:
        if not isinstance(payload, dict):
            return Response()
        stop_reason = payload.get("stop_reason")
        return Response(
            text=_content_blocks_text(payload.get("content")),
            finish_reason=stop_reason if isinstance(stop_reason, str) else "stop",
            model=_model_of(payload),
        )

    @staticmethod
    def _system_text(content: MessageContent) -> str:
        if isinstance(content, str):
            return content
        return "\n".join(part.text if part.type == "text" else "[Image attachment]" for part in content)

    @staticmethod
    def _content(content: MessageContent) -> object:
        if isinstance(content, str):
            return content
        blocks: list[dict] = []
        for part in content:
            if part.type == "text":
                blocks.append({"type": "text", "text": part.text})
                continue
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.mime_type, "data": part.base64_data},
                }
            )
        if len(blocks) == 1 and blocks[0]["type"] == "text":
            return blocks[0]["text"]
        return blocks


@dataclass(frozen=True, slots=True)
class GeminiAdapter:
    def build_request(self, options: RequestOptions, *, base_url: Optional[str] = None) -> HttpRequest:
        root = _normalize_base_url(base_url, GEMINI_API_URL)
        base = f"{root}/models/{options.model}"
        url = f"{base}:streamGenerateContent?alt=sse" if options.stream else f"{base}:generateContent"

        generation_config: dict[str, Any] = {}
        if options.temperature is not None:
            generation_config["temperature"] = options.temperature
        if options.max_tokens is not None:
            generation_config["maxOutputTokens"] = options.max_tokens

        body = {
            "contents": [
                {"role": "model" if message.role == "assistant" else "user", "parts": self._parts(message)}
                for message in options.messages
            ],
            "generationConfig": generation_config,
        }
        return HttpRequest(url=url, body=body, headers=dict(_JSON_HEADERS))

    def parse_response(self, payload: object) -> Response:
        if not isinstance(payload, dict):
            return Response()
        candidate = _first(payload.get("candidates"))
        finish_reason = "stop"
        if isinstance(candidate, dict):
            metadata = candidate.get("metadata")
            if isinstance(metadata, dict) and isinstance(metadata.get("finishReason"), str):
                finish_reason = metadata["finishReason"]
            elif isinstance(candidate.get("finishReason"), str):
                finish_reason = candidate["finishReason"]
        return Response(
            text=_candidates_text(payload.get("candidates")),
            finish_reason=finish_reason,
            model=_model_of(payload),
        )

    @staticmethod
    def _parts(message: Message) -> list[dict]:
        if isinstance(message.content, str):
            return [{"text": message.content}]
        parts: list[dict] = []
        for part in message.content:
            if part.type == "text":
                parts.append({"text": part.text})
            else:
                parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.base64_data}})
        return parts or [{"text": ""}]


_ADAPTERS: dict[str, ProviderAdapter] = {
    "openai": OpenAIAdapter(),
    "openai-compatible": OpenAIAdapter(),
    "anthropic": AnthropicAdapter(),
    "gemini": GeminiAdapter(),
}


def get_provider_adapter(provider: str) -> ProviderAdapter:
    adapter = _ADAPTERS.get(provider)
    if adapter is None:
        raise ValueError(f"Unsupported provider: {provider}")
    return adapter
