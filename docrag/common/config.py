"""
Configuration Management for docrag

Loads configuration from ~/.docrag/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

from dotenv import load_dotenv

logger = logging.getLogger("docrag.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".docrag"
CONFIG_PATH = CONFIG_DIR / "config.json"

RESPONDER_CLI = "cli"
RESPONDER_CLOUD = "cloud"


@dataclass
class LLMConfig:
    """Cloud model provider configuration shared by synthesis and filtering"""
    provider: str = "google"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    timeout_ms: int = 60000

    @property
    def api_key(self) -> str:
        return getattr(self, f"{self.provider}_api_key", "")

    @property
    def model(self) -> str:
        return getattr(self, f"{self.provider}_model", "")


@dataclass
class ResponderConfig:
    """Which synthesis backend answers queries"""
    type: str = RESPONDER_CLI  # "cli" or "cloud"
    cli_command: str = "claude"
    cli_args: list = field(default_factory=lambda: ["--print"])
    max_tokens: int = 2048
    temperature: float = 0.7


@dataclass
class FilterConfig:
    """Relevance filter sub-agent configuration"""
    model: str = ""  # empty means the provider's default model
    max_output_tokens: int = 1024
    temperature: float = 0.1


@dataclass
class RetrievalConfig:
    """Query and ingestion defaults"""
    top_k: int = 5
    chunk_size: int = 100  # words
    chunk_overlap: int = 20  # words


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    model: str = "BAAI/bge-small-en-v1.5"
    batch_size: int = 100
    max_chars: int = 8000


@dataclass
class DocragConfig:
    """Main docrag configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    responder: ResponderConfig = field(default_factory=ResponderConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        timeout_ms=int(llm_data.get("timeout_ms", defaults.timeout_ms)),
    )


def _parse_responder_config(data: dict) -> ResponderConfig:
    responder_data = data.get("responder", {})
    defaults = ResponderConfig()
    return ResponderConfig(
        type=responder_data.get("type", defaults.type),
        cli_command=responder_data.get("cli_command", defaults.cli_command),
        cli_args=list(responder_data.get("cli_args", defaults.cli_args)),
        max_tokens=responder_data.get("max_tokens", defaults.max_tokens),
        temperature=responder_data.get("temperature", defaults.temperature),
    )


def _parse_filter_config(data: dict) -> FilterConfig:
    filter_data = data.get("filter", {})
    return FilterConfig(
        model=filter_data.get("model", ""),
        max_output_tokens=filter_data.get("max_output_tokens", 1024),
        temperature=filter_data.get("temperature", 0.1),
    )


def _parse_retrieval_config(data: dict) -> RetrievalConfig:
    retrieval_data = data.get("retrieval", {})
    return RetrievalConfig(
        top_k=retrieval_data.get("top_k", 5),
        chunk_size=retrieval_data.get("chunk_size", 100),
        chunk_overlap=retrieval_data.get("chunk_overlap", 20),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    embedding_data = data.get("embedding", {})
    defaults = EmbeddingConfig()
    return EmbeddingConfig(
        model=embedding_data.get("model", defaults.model),
        batch_size=embedding_data.get("batch_size", defaults.batch_size),
        max_chars=embedding_data.get("max_chars", defaults.max_chars),
    )


def load_config() -> DocragConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (a .env file in the working directory counts)
    2. Config file (~/.docrag/config.json)
    3. Default values
    """
    load_dotenv()
    config = DocragConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.responder = _parse_responder_config(data)
            config.filter = _parse_filter_config(data)
            config.retrieval = _parse_retrieval_config(data)
            config.embedding = _parse_embedding_config(data)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)

    _env_llm_map = {
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "OPENAI_API_KEY": "openai_api_key",
        "DOCRAG_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    # Model override applies to whichever provider is active
    if os.getenv("DOCRAG_RESPONSE_MODEL"):
        setattr(config.llm, f"{config.llm.provider}_model", os.getenv("DOCRAG_RESPONSE_MODEL"))
    if os.getenv("DOCRAG_TIMEOUT_MS"):
        config.llm.timeout_ms = int(os.getenv("DOCRAG_TIMEOUT_MS"))
    if os.getenv("DOCRAG_FILTER_MODEL"):
        config.filter.model = os.getenv("DOCRAG_FILTER_MODEL")
    if os.getenv("DOCRAG_RESPONDER"):
        config.responder.type = os.getenv("DOCRAG_RESPONDER").lower()
    if os.getenv("DOCRAG_CLI_COMMAND"):
        config.responder.cli_command = os.getenv("DOCRAG_CLI_COMMAND")
    if os.getenv("DOCRAG_TOP_K"):
        config.retrieval.top_k = int(os.getenv("DOCRAG_TOP_K"))

    return config


def validate_config(config: DocragConfig) -> None:
    """Raise ValueError when a setting is outside its supported range."""
    retrieval = config.retrieval
    if retrieval.top_k < 1 or retrieval.top_k > 100:
        raise ValueError("top_k must be between 1 and 100")
    if retrieval.chunk_size < 10 or retrieval.chunk_size > 10000:
        raise ValueError("chunk_size must be between 10 and 10000 words")
    if retrieval.chunk_overlap < 0 or retrieval.chunk_overlap >= retrieval.chunk_size:
        raise ValueError("chunk_overlap must be >= 0 and less than chunk_size")
    if config.llm.timeout_ms <= 0:
        raise ValueError("timeout_ms must be positive")
    if config.responder.type not in (RESPONDER_CLI, RESPONDER_CLOUD):
        raise ValueError(f"Unknown responder type: {config.responder.type}")


def save_config(config: DocragConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "google_api_key": config.llm.google_api_key,
        "google_model": config.llm.google_model,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "timeout_ms": config.llm.timeout_ms,
    }
    for key in ("google_api_key", "anthropic_api_key", "openai_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    data = {
        "llm": llm_section,
        "responder": {
            "type": config.responder.type,
            "cli_command": config.responder.cli_command,
            "cli_args": list(config.responder.cli_args),
            "max_tokens": config.responder.max_tokens,
            "temperature": config.responder.temperature,
        },
        "filter": {
            "model": config.filter.model,
            "max_output_tokens": config.filter.max_output_tokens,
            "temperature": config.filter.temperature,
        },
        "retrieval": {
            "top_k": config.retrieval.top_k,
            "chunk_size": config.retrieval.chunk_size,
            "chunk_overlap": config.retrieval.chunk_overlap,
        },
        "embedding": {
            "model": config.embedding.model,
            "batch_size": config.embedding.batch_size,
            "max_chars": config.embedding.max_chars,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
