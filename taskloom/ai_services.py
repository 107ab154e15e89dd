import instructor
import litellm
from typing import List, Dict, Any, Type, Optional, Protocol
from pydantic import BaseModel

from . import config
from .errors import UpstreamError
from .models import GenerationResult, GenerationRole, TelemetryData
from .utils import log

# --- Generation Adapter Contract ---
class Generator(Protocol):
    async def generate_text(
        self, role: GenerationRole, system_prompt: str, prompt: str, command_name: Optional[str] = None,
    ) -> GenerationResult: ...

    async def generate_object(
        self, role: GenerationRole, schema: Type[BaseModel], system_prompt: str, prompt: str, command_name: Optional[str] = None,
    ) -> GenerationResult: ...


# --- Helper Functions ---
def _model_for_role(role: GenerationRole) -> str:
    return config.RESEARCH_MODEL if role == "research" else config.LLM_MODEL

def _get_llm_kwargs(
    role: GenerationRole = "main",
    max_tokens_override: Optional[int] = None,
    temperature_override: Optional[float] = None,
    model_override: Optional[str] = None,
) -> Dict[str, Any]:
    """Returns common kwargs for LLM calls via litellm."""
    return {
        "model": model_override or _model_for_role(role),
        "max_tokens": max_tokens_override or config.MAX_TOKENS,
        "temperature": temperature_override if temperature_override is not None else config.TEMPERATURE,
    }

def _messages(system_prompt: str, prompt: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": prompt},
    ]

def build_telemetry(completion: Any, role: GenerationRole, model: str, command_name: Optional[str]) -> TelemetryData:
    """Extracts token usage and cost from a litellm completion response."""
    usage = getattr(completion, "usage", None)
    input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
    output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
    try:
        cost = float(litellm.completion_cost(completion_response=completion) or 0.0)
    except Exception as e:
        # litellm raises for models it has no price for; usage is still reported
        log.debug(f"No cost information for model {model}: {e}")
        cost = 0.0
    return TelemetryData(
        commandName=command_name,
        role=role,
        modelUsed=model,
        inputTokens=input_tokens,
        outputTokens=output_tokens,
        totalTokens=input_tokens + output_tokens,
        totalCost=cost,
    )


# --- litellm / Instructor Adapter ---
class LiteLLMGenerator:
    """Executes prompts through litellm (text) and Instructor over litellm (schema objects).

    There is no retry loop here beyond Instructor's schema re-asks; transport
    retries and backoff are configured on litellm itself.
    """

    def __init__(self, client: Any = None, max_retries: int = config.LLM_MAX_RETRIES, **llm_overrides):
        # JSON mode keeps nested models working across providers
        self.client = client or instructor.from_litellm(litellm.acompletion, mode=instructor.Mode.JSON)
        self.max_retries = max_retries
        self.llm_overrides = llm_overrides

    async def generate_text(
        self,
        role: GenerationRole,
        system_prompt: str,
        prompt: str,
        command_name: Optional[str] = None,
    ) -> GenerationResult:
        llm_kwargs = _get_llm_kwargs(role, **self.llm_overrides)
        log.debug(f"Calling LLM for text: Model={llm_kwargs['model']}, Role={role}, Command={command_name}")
        try:
            completion = await litellm.acompletion(messages=_messages(system_prompt, prompt), **llm_kwargs)
        except Exception as e:
            log.error(f"Error calling LLM ({llm_kwargs['model']}) for {command_name or 'text generation'}: {e}")
            raise UpstreamError(f"AI text generation failed: {e}", cause=e, operation=command_name)

        choices = getattr(completion, "choices", None) or []
        text = choices[0].message.content if choices else ""
        telemetry = build_telemetry(completion, role, llm_kwargs["model"], command_name)
        return GenerationResult.from_raw(text or "", telemetry=telemetry)

    async def generate_object(
        self,
        role: GenerationRole,
        schema: Type[BaseModel],
        system_prompt: str,
        prompt: str,
        command_name: Optional[str] = None,
    ) -> GenerationResult:
        llm_kwargs = _get_llm_kwargs(role, **self.llm_overrides)
        log.debug(f"Calling LLM with Instructor: Model={llm_kwargs['model']}, ResponseModel={schema.__name__}")
        try:
            obj, completion = await self.client.chat.completions.create_with_completion(
                messages=_messages(system_prompt, prompt),
                response_model=schema,
                max_retries=self.max_retries,
                **llm_kwargs,
            )
        except Exception as e:
            log.error(f"Error calling LLM via Instructor for {schema.__name__}: {e}")
            raise UpstreamError(f"AI object generation failed for {schema.__name__}: {e}", cause=e, operation=command_name)

        telemetry = build_telemetry(completion, role, llm_kwargs["model"], command_name)
        return GenerationResult.from_raw(obj, telemetry=telemetry)
