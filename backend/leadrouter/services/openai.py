"""Cliente centralizado para interactuar con OpenAI."""

from __future__ import annotations

from functools import lru_cache

from openai import AsyncOpenAI, OpenAIError

from leadrouter.core.config import Settings


class CompletionError(RuntimeError):
    """Falla al obtener una respuesta del modelo."""


@lru_cache(maxsize=4)
def get_openai_client(api_key: str) -> AsyncOpenAI:
    """Crea un cliente asíncrono reutilizable por API key."""
    return AsyncOpenAI(api_key=api_key)


def client_for(settings: Settings) -> AsyncOpenAI:
    if not settings.openai_api_key:
        raise CompletionError("OPENAI_API_KEY is not configured")
    return get_openai_client(settings.openai_api_key)


async def complete(
    system_prompt: str,
    user_prompt: str,
    *,
    settings: Settings,
    client: AsyncOpenAI | None = None,
    temperature: float = 0.2,
) -> str:
    """Una sola vuelta de chat; devuelve el texto de la primera opción."""
    client = client or client_for(settings)
    try:
        response = await client.chat.completions.create(
            model=settings.openai_model,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
    except OpenAIError as exc:
        raise CompletionError(str(exc)) from exc
    if not response.choices:
        raise CompletionError("Respuesta sin opciones")
    return (response.choices[0].message.content or "").strip()
