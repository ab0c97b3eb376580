"""Configuración central basada en variables de entorno."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Valores globales leídos desde `.env` o el entorno."""

    environment: str = "development"
    log_level: str | None = Field(
        default=None,
        description="Nivel de logging global (ej. debug, info, warning). Cuando no se define, usa un valor por ambiente.",
    )
    request_log_level: str = Field(
        default="info",
        description=(
            "Nivel mínimo para registrar solicitudes en middleware. "
            "Valores más altos (warning/error) reducen registros de peticiones exitosas."
        ),
    )
    request_log_skip_prefixes: tuple[str, ...] = Field(
        default=("/health", "/api/health", "/favicon", "/docs", "/openapi"),
        description="Prefijos de ruta para los que no se registrarán eventos de request.started/completed.",
    )
    log_file_path: str | None = Field(
        default=None,
        description="Archivo rotativo opcional; sin valor sólo se escribe a stdout.",
    )

    # Datastore (Supabase PostgREST)
    supabase_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_SUPABASE_URL", "SUPABASE_URL"),
    )
    supabase_service_role: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "LEADROUTER_SUPABASE_SERVICE_ROLE", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_ROLE"
        ),
    )
    supabase_anon: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_SUPABASE_ANON", "SUPABASE_ANON_KEY", "SUPABASE_ANON"),
    )
    supabase_jwt_secret: str | None = None
    supabase_jwt_audience: str = Field(
        default="authenticated",
        description="Claim `aud` exigido en los JWT de operadores.",
    )

    # Motor conversacional (Dify chatflow)
    dify_api_url: str = Field(
        default="https://api.dify.ai/v1",
        validation_alias=AliasChoices("LEADROUTER_DIFY_API_URL", "DIFY_API_URL"),
    )
    dify_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_DIFY_API_KEY", "DIFY_API_KEY"),
    )
    dify_timeout_seconds: float = 30.0

    # Canal oficial (Meta WhatsApp Business)
    meta_access_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_META_ACCESS_TOKEN", "META_ACCESS_TOKEN"),
    )
    meta_phone_number_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_META_PHONE_NUMBER_ID", "META_PHONE_NUMBER_ID"),
    )
    meta_graph_version: str = "v18.0"
    meta_verify_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_META_VERIFY_TOKEN", "META_VERIFY_TOKEN"),
    )
    meta_app_secret: str | None = Field(
        default=None,
        description="Cuando se define, se exige `X-Hub-Signature-256` en el webhook oficial.",
    )

    # Canal gateway (Whapi)
    whapi_base_url: str = "https://gate.whapi.cloud"
    whapi_token: str | None = Field(
        default=None,
        description="Token de la cuenta que atiende a los clientes por el gateway.",
        validation_alias=AliasChoices("LEADROUTER_WHAPI_TOKEN", "WHAPI_TOKEN"),
    )
    relay_whapi_token: str | None = Field(
        default=None,
        description="Token de la cuenta interna (bot relay) usada para avisar a vendedores.",
        validation_alias=AliasChoices("LEADROUTER_RELAY_WHAPI_TOKEN", "RODRIGO_BOT_TOKEN"),
    )
    relay_sender_name: str = "Rodrigo Bot"
    gateway_webhook_token: str | None = Field(
        default=None,
        description="Cuando se define, el webhook del gateway exige `?token=` con este valor.",
    )

    # Cola de mensajes
    debounce_seconds: int = Field(default=60, ge=0)
    debounce_policy: str = Field(
        default="extend",
        description="`extend` reinicia la ventana con cada mensaje; `fixed` respeta el primer vencimiento.",
    )
    queue_batch_size: int = 10
    queue_max_retries: int = 3
    queue_retry_backoff_seconds: int = 30
    queue_retention_hours: int = 6
    queue_stuck_hours: int = 2

    # Autoridad y evaluación
    idle_minutes: int = 5
    evaluation_batch_size: int = 50
    transfer_batch_size: int = 10
    qualification_mode: str = Field(default="heuristic", description="`heuristic` o `llm`.")
    qualification_keywords: tuple[str, ...] = Field(
        default=(
            "preço",
            "preco",
            "valor",
            "quanto custa",
            "orçamento",
            "comprar",
            "compra",
            "pagamento",
            "parcelar",
            "financiamento",
            "desconto",
            "entrega",
            "disponível",
            "interesse",
        ),
        description="Vocabulario de intención de compra; se compara sin acentos ni mayúsculas.",
    )
    qualification_min_exchanges: int = 4
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEADROUTER_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_model: str = "gpt-4o-mini"

    # Monitor de entregas
    delivery_stale_minutes: int = 15
    delivery_max_retries: int = 3
    delivery_check_batch_size: int = 50

    phone_country_code: str = "55"
    cron_secret: str | None = Field(
        default=None,
        description="Secreto compartido con el scheduler externo (`X-Cron-Secret`).",
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="LEADROUTER_", extra="allow", populate_by_name=True
    )


settings = Settings()
