import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .tokens import IMAGE_TOKEN_ESTIMATE

CONTEXT_MODES = ("thread", "room", "both")
CHAT_COMPLETIONS_SUFFIX = "/v1/chat/completions"


class ConfigError(ValueError):
    pass


def _get(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value


def _env_str(environ: Mapping[str, str], name: str, default: str = "") -> str:
    value = environ.get(name)
    return default if value is None else value


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = _get(environ, name)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _env_int(environ: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    value = _get(environ, name)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _env_float(environ: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    value = _get(environ, name)
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


@dataclass(frozen=True)
class BotConfig:
    """Process-wide settings read from the environment."""

    data_path: str = "./storage"
    log_level: str = "INFO"

    homeserver_url: str = "https://matrix.org"
    access_token: Optional[str] = None
    bot_username: Optional[str] = None
    bot_password: Optional[str] = None

    autojoin: bool = True
    threads: bool = True
    first_chunk_size: Optional[int] = None
    use_two_chunks_for_first_reply: bool = False
    generating_message: str = "*...⚒️generating⚒️...*"
    unexpected_finish_reason: str = "**❗UNEXPECTED FINISH REASON: {finishReason}.**"
    add_usage: bool = False
    prefix_dm: bool = False
    welcome: bool = True

    blacklist: str = ""
    whitelist: str = ""
    room_blacklist: str = ""
    room_whitelist: str = ""

    default_prefix: str = ""
    default_prefix_reply: bool = False

    openai_api_key: str = ""
    reverse_proxy: str = ""
    timeout_ms: int = 2 * 60 * 1000
    context: str = "thread"
    model: str = ""
    system_message: str = ""
    temperature: float = 1.0
    max_prompt_tokens: Optional[int] = 3097
    max_response_tokens: Optional[int] = 2048
    prompt_token_cost: Optional[float] = None
    response_token_cost: Optional[float] = None
    enable_vision: bool = True
    image_detail: str = "auto"
    image_tokens: int = IMAGE_TOKEN_ESTIMATE

    @property
    def streaming(self) -> bool:
        return bool(self.first_chunk_size and self.first_chunk_size > 0)

    @property
    def openai_base_url(self) -> Optional[str]:
        base_url = self.reverse_proxy.strip()
        if not base_url:
            return None
        if base_url.endswith(CHAT_COMPLETIONS_SUFFIX):
            base_url = base_url[: -len(CHAT_COMPLETIONS_SUFFIX)] + "/v1/"
        return base_url


def load_config(environ: Optional[Mapping[str, str]] = None) -> BotConfig:
    env = os.environ if environ is None else environ
    context = _env_str(env, "CHATGPT_CONTEXT", "thread").strip().lower() or "thread"
    if context not in CONTEXT_MODES:
        raise ConfigError(f"CHATGPT_CONTEXT must be one of {', '.join(CONTEXT_MODES)}, got {context!r}")
    return BotConfig(
        data_path=_env_str(env, "DATA_PATH", "./storage"),
        log_level=_env_str(env, "LOG_LEVEL", "INFO").upper(),
        homeserver_url=_env_str(env, "MATRIX_HOMESERVER_URL", "https://matrix.org").rstrip("/"),
        access_token=_get(env, "MATRIX_ACCESS_TOKEN"),
        bot_username=_get(env, "MATRIX_BOT_USERNAME"),
        bot_password=_get(env, "MATRIX_BOT_PASSWORD"),
        autojoin=_env_bool(env, "MATRIX_AUTOJOIN", True),
        threads=_env_bool(env, "MATRIX_THREADS", True),
        first_chunk_size=_env_int(env, "MATRIX_FIRST_CHUNK_SIZE", None),
        use_two_chunks_for_first_reply=_env_bool(env, "MATRIX_USE_TWO_CHUNKS_FOR_FIRST_REPLY", False),
        generating_message=_env_str(env, "MATRIX_GENERATING_MESSAGE", BotConfig.generating_message),
        unexpected_finish_reason=_env_str(
            env, "MATRIX_UNEXPECTED_FINISH_REASON", BotConfig.unexpected_finish_reason
        ),
        add_usage=_env_bool(env, "MATRIX_ADD_USAGE", False),
        prefix_dm=_env_bool(env, "MATRIX_PREFIX_DM", False),
        welcome=_env_bool(env, "MATRIX_WELCOME", True),
        blacklist=_env_str(env, "MATRIX_BLACKLIST"),
        whitelist=_env_str(env, "MATRIX_WHITELIST"),
        room_blacklist=_env_str(env, "MATRIX_ROOM_BLACKLIST"),
        room_whitelist=_env_str(env, "MATRIX_ROOM_WHITELIST"),
        default_prefix=_env_str(env, "MATRIX_DEFAULT_PREFIX"),
        default_prefix_reply=_env_bool(env, "MATRIX_DEFAULT_PREFIX_REPLY", False),
        openai_api_key=_env_str(env, "OPENAI_API_KEY"),
        reverse_proxy=_env_str(env, "CHATGPT_REVERSE_PROXY"),
        timeout_ms=_env_int(env, "CHATGPT_TIMEOUT", 2 * 60 * 1000),
        context=context,
        model=_env_str(env, "CHATGPT_API_MODEL").strip(),
        system_message=_env_str(env, "CHATGPT_PROMPT_PREFIX"),
        temperature=_env_float(env, "CHATGPT_TEMPERATURE", 1.0),
        max_prompt_tokens=_env_int(env, "CHATGPT_MAX_PROMPT_TOKENS", 3097),
        max_response_tokens=_env_int(env, "CHATGPT_MAX_RESPONSE_TOKENS", 2048),
        prompt_token_cost=_env_float(env, "CHATGPT_PROMPT_TOKEN_COST", None),
        response_token_cost=_env_float(env, "CHATGPT_RESPONSE_TOKEN_COST", None),
        enable_vision=_env_bool(env, "CHATGPT_ENABLE_VISION", True),
        image_detail=_env_str(env, "CHATGPT_IMAGE_DETAIL", "auto").strip() or "auto",
        image_tokens=_env_int(env, "CHATGPT_IMAGE_TOKENS", IMAGE_TOKEN_ESTIMATE),
    )
