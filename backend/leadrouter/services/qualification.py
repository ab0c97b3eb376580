"""Evaluación de leads: decide si una conversación inactiva pasa a un vendedor."""

from __future__ import annotations

import unicodedata
from dataclasses import asdict, dataclass, field
from typing import Protocol

from openai import AsyncOpenAI

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.models.conversation import Conversation, Message
from leadrouter.repositories.store import Datastore
from leadrouter.services import openai as openai_service
from leadrouter.services.authority import AuthorityError, AuthorityService

logger = get_logger(__name__)

REASON_STRONG = "qualified_lead"
REASON_WEAK = "qualified_lead_low_confidence"
REASON_NO_SIGNAL = "no_purchase_signal"
REASON_EMPTY = "empty_transcript"

_SPEAKERS = {"customer": "Cliente", "bot": "Bot", "seller": "Vendedor", "system": "Sistema"}


def fold(text: str) -> str:
    """Minúsculas sin acentos para comparar vocabulario."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


@dataclass(slots=True)
class Transcript:
    customer_name: str | None
    phone_number: str | None
    lines: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_messages(cls, conversation: Conversation, messages: list[Message]) -> "Transcript":
        ordered = sorted(messages, key=lambda message: (message.created_at is None, message.created_at))
        return cls(
            customer_name=conversation.customer_name,
            phone_number=conversation.phone_number,
            lines=[(message.sender_type, message.content) for message in ordered if message.content],
        )

    @property
    def customer_messages(self) -> list[str]:
        return [content for sender, content in self.lines if sender == "customer"]

    def render(self) -> str:
        return "\n".join(f"{_SPEAKERS.get(sender, sender)}: {content}" for sender, content in self.lines)


@dataclass(slots=True)
class Evaluation:
    should_transfer: bool
    reason: str
    summary: str
    confidence: str = "high"
    matched_keywords: list[str] = field(default_factory=list)
    evaluator: str = "heuristic"

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


class Evaluator(Protocol):
    async def evaluate(self, transcript: Transcript) -> Evaluation: ...


def build_summary(
    transcript: Transcript, *, keywords: list[str] | None = None, low_confidence: bool = False
) -> str:
    """Resumen heurístico del atendimento para el vendedor."""
    customer = transcript.customer_messages
    lines = [
        f"- Cliente: {transcript.customer_name or 'Não informado'}",
        f"- Mensagens do cliente: {len(customer)}",
    ]
    if keywords:
        lines.append(f"- Sinais de compra: {', '.join(keywords)}")
    if customer:
        recent = " | ".join(text.strip() for text in customer[-3:])
        lines.append(f"- Últimas mensagens: {recent}")
    if low_confidence:
        lines.append("- ⚠️ Confiança baixa: poucas interações, confirmar interesse antes de avançar")
    return "\n".join(lines)


class HeuristicEvaluator:
    """Vocabulario de intención de compra + umbral mínimo de mensajes del cliente."""

    name = "heuristic"

    def __init__(self, keywords: tuple[str, ...] | list[str], min_exchanges: int) -> None:
        self._keywords = [(keyword, fold(keyword)) for keyword in keywords if keyword.strip()]
        self._min_exchanges = min_exchanges

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HeuristicEvaluator":
        cfg = settings or default_settings
        return cls(cfg.qualification_keywords, cfg.qualification_min_exchanges)

    def matched(self, transcript: Transcript) -> list[str]:
        haystack = fold(" ".join(transcript.customer_messages))
        return [original for original, folded in self._keywords if folded in haystack]

    async def evaluate(self, transcript: Transcript) -> Evaluation:
        customer = transcript.customer_messages
        if not customer:
            return Evaluation(False, REASON_EMPTY, build_summary(transcript), "high")

        keywords = self.matched(transcript)
        if not keywords:
            return Evaluation(False, REASON_NO_SIGNAL, build_summary(transcript), "high")

        if len(customer) >= self._min_exchanges:
            return Evaluation(
                True, REASON_STRONG, build_summary(transcript, keywords=keywords), "high", keywords
            )
        return Evaluation(
            True,
            REASON_WEAK,
            build_summary(transcript, keywords=keywords, low_confidence=True),
            "low",
            keywords,
        )


_LLM_PROMPT = """Analise esta conversa e avalie se vale a pena enviar este lead para um vendedor.

Critérios de Avaliação:
1. O cliente demonstrou interesse real em algum produto/serviço?
2. O cliente forneceu informações suficientes para um atendimento comercial?
3. A conversa não foi apenas uma consulta simples já resolvida pelo bot?
4. O cliente não abandonou a conversa no meio do atendimento sem demonstrar interesse?

Responda na primeira linha apenas com QUALIFICADO ou NÃO_QUALIFICADO.
Na segunda linha, justifique sua decisão em uma frase."""


def parse_verdict(answer: str) -> tuple[bool, str]:
    """Interpreta `QUALIFICADO` / `NÃO_QUALIFICADO` y la justificación."""
    lines = [line.strip() for line in answer.strip().splitlines() if line.strip()]
    if not lines:
        return False, ""
    head = fold(lines[0]).upper().replace(" ", "_")
    qualified = "QUALIFICADO" in head and "NAO_QUALIFICADO" not in head
    justification = " ".join(lines[1:]) or lines[0]
    return qualified, justification


class LLMEvaluator:
    """Misma interfaz que la heurística, decidida por un modelo de OpenAI."""

    name = "llm"

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        settings: Settings | None = None,
        fallback: HeuristicEvaluator | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._client = client
        self._fallback = fallback or HeuristicEvaluator.from_settings(self._settings)

    async def evaluate(self, transcript: Transcript) -> Evaluation:
        if not transcript.customer_messages:
            return Evaluation(False, REASON_EMPTY, build_summary(transcript), evaluator=self.name)
        user_prompt = (
            f"Cliente: {transcript.customer_name or 'Não informado'}\n"
            f"Total de mensagens: {len(transcript.lines)}\n\n"
            f"Histórico da Conversa:\n{transcript.render()}"
        )
        try:
            answer = await openai_service.complete(
                _LLM_PROMPT, user_prompt, settings=self._settings, client=self._client
            )
        except openai_service.CompletionError as exc:
            logger.warning("qualification.llm_failed", extra={"error": str(exc)})
            return await self._fallback.evaluate(transcript)

        qualified, justification = parse_verdict(answer)
        keywords = self._fallback.matched(transcript)
        summary = build_summary(transcript, keywords=keywords)
        if justification:
            summary = f"{summary}\n- Avaliação: {justification}"
        return Evaluation(
            qualified,
            REASON_STRONG if qualified else REASON_NO_SIGNAL,
            summary,
            "high",
            keywords,
            self.name,
        )


def build_evaluator(settings: Settings | None = None) -> Evaluator:
    cfg = settings or default_settings
    if cfg.qualification_mode == "llm" and cfg.openai_api_key:
        return LLMEvaluator(settings=cfg)
    return HeuristicEvaluator.from_settings(cfg)


class EvaluationService:
    """Evalúa por lotes las conversaciones en `waiting_evaluation`."""

    def __init__(
        self,
        store: Datastore | None = None,
        *,
        settings: Settings | None = None,
        evaluator: Evaluator | None = None,
        authority: AuthorityService | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        self._evaluator = evaluator or build_evaluator(self._settings)
        self._authority = authority or AuthorityService(self._store, settings=self._settings)

    async def evaluate_conversation(self, conversation: Conversation) -> Evaluation:
        messages = await self._store.messages.list_for_conversation(conversation.id)
        return await self._evaluator.evaluate(Transcript.from_messages(conversation, messages))

    async def run_pending(self, *, limit: int | None = None) -> dict[str, int]:
        conversations = await self._store.conversations.list_by_status(
            "waiting_evaluation",
            fallback_mode=False,
            limit=limit or self._settings.evaluation_batch_size,
        )
        counts = {"evaluated": 0, "qualified": 0, "finished": 0, "skipped": 0}
        for conversation in conversations:
            evaluation = await self.evaluate_conversation(conversation)
            try:
                await self._authority.apply_evaluation(
                    conversation,
                    should_transfer=evaluation.should_transfer,
                    evaluation=evaluation.as_dict(),
                )
            except AuthorityError as exc:
                counts["skipped"] += 1
                log_event(logger, "qualification.skipped", conversation_id=conversation.id, error=str(exc))
                continue
            counts["evaluated"] += 1
            counts["qualified" if evaluation.should_transfer else "finished"] += 1
            await self._store.system_logs.record(
                "lead_evaluation",
                "qualification",
                f"{'QUALIFICADO' if evaluation.should_transfer else 'NÃO_QUALIFICADO'}: {evaluation.reason}",
                {
                    "conversation_id": conversation.id,
                    "phone": mask_phone(conversation.phone_number),
                    "reason": evaluation.reason,
                    "confidence": evaluation.confidence,
                    "evaluator": evaluation.evaluator,
                },
            )
        log_event(logger, "qualification.batch_completed", **counts)
        return counts
