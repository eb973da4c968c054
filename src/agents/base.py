import json
import logging
import re
from importlib import import_module
from pathlib import Path
from typing import Any, Sequence

import yaml
from dotenv import load_dotenv

load_dotenv()
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.tools import BaseTool

from core.errors import LLMInvocationFailure

logger = logging.getLogger(__name__)

PATH_TO_TEMPLATES = Path(__file__).parent / "prompts"

MESSAGE_CLASSES = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}

# Supported providers and their LangChain classes
PROVIDER_CLASSES: dict[str, str] = {
    "openai": "langchain_openai.ChatOpenAI",
    "google_genai": "langchain_google_genai.ChatGoogleGenerativeAI",
    "anthropic": "langchain_anthropic.ChatAnthropic",
    "ollama": "langchain_ollama.ChatOllama",
}

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_DANGLING_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def get_model(provider: str, model: str, **kwargs: Any) -> BaseChatModel:
    """Create a LangChain chat model from provider and model name."""
    if provider not in PROVIDER_CLASSES:
        raise ValueError(
            f"Unknown provider: {provider}. Supported: {list(PROVIDER_CLASSES.keys())}"
        )

    module_path, class_name = PROVIDER_CLASSES[provider].rsplit(".", 1)
    module = import_module(module_path)
    model_class = getattr(module, class_name)

    return model_class(model=model, **kwargs)


def custom_tojson(value: Any) -> str:
    """Sanitize and JSON-encode a value for prompt insertion."""
    sanitized = re.sub(r"[^\x20-\x7E]", " ", value) if isinstance(value, str) else value
    return json.dumps(sanitized, ensure_ascii=False)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences (optionally tagged `json`) around model output."""
    text = _FENCE_PATTERN.sub(r"\1", text).strip()
    return _DANGLING_FENCE_PATTERN.sub("", text).strip()


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(PATH_TO_TEMPLATES),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    env.filters["custom_tojson"] = custom_tojson
    env.globals["custom_tojson"] = custom_tojson
    return env


def render_template(template_name: str, **variables: Any) -> str:
    """Render a Jinja2 template from the prompts directory to plain text."""
    return _environment().get_template(template_name).render(**variables)


def load_prompt(prompt_name: str, **variables: Any) -> list[BaseMessage]:
    """Load a Jinja2 YAML template and render to LangChain messages."""
    rendered = render_template(f"{prompt_name}.yml.j2", **variables)
    messages_data = yaml.safe_load(rendered)
    return [MESSAGE_CLASSES[m["role"]](content=m["content"]) for m in messages_data]


class ChatBackend:
    """One named LLM backend; every call failure surfaces as `LLMInvocationFailure`."""

    def __init__(self, name: str, llm: BaseChatModel):
        self.name = name
        self.llm = llm

    @classmethod
    def from_provider(
        cls,
        name: str,
        provider: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> "ChatBackend":
        llm = get_model(
            provider,
            model,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        return cls(name, llm)

    def __repr__(self) -> str:
        return f"ChatBackend(name={self.name!r}, llm={type(self.llm).__name__})"

    def complete(
        self,
        messages: str | Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> AIMessage:
        """Run one completion; the reply carries `content` and/or `tool_calls`."""
        if isinstance(messages, str):
            messages = [HumanMessage(content=messages)]

        try:
            runnable = self.llm.bind_tools(list(tools)) if tools else self.llm
            response = runnable.invoke(list(messages))
        except Exception as e:
            logger.error("Backend %s failed: %s", self.name, e)
            raise LLMInvocationFailure(self.name, str(e)) from e

        if not isinstance(response, AIMessage):
            raise LLMInvocationFailure(
                self.name, f"expected an AIMessage, got {type(response).__name__}"
            )
        logger.debug("Backend %s replied: %s", self.name, response.content)
        return response


def message_text(message: AIMessage) -> str:
    """Flatten message content, which some providers return as a list of parts."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)
