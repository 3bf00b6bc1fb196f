"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from chat_recall.errors import FatalConfigurationError


@dataclass
class TypesenseConfig:
    host: str = "localhost"
    port: int = 8108
    protocol: str = "http"
    api_key: str = "dev-api-key"
    connection_timeout_seconds: int = 5
    embedding_dim: int = 1536
    message_collection: str = "message_vectors"
    window_collection: str = "window_vectors"


@dataclass
class StorageConfig:
    messages_db: Path = field(default_factory=lambda: Path.home() / "chat-recall" / "messages.db")
    state_db: Path = field(default_factory=lambda: Path.home() / "chat-recall" / "state" / "indexer.db")


@dataclass
class EmbeddingConfig:
    api_key: str = ""
    model: str = "text-embedding-3-small"
    base_url: str | None = None
    batch_size: int = 32
    timeout_seconds: float = 30.0


@dataclass
class LLMConfig:
    anthropic_api_key: str = ""
    model: str = "claude-3-5-haiku-latest"
    timeout_seconds: float = 30.0
    max_tokens: int = 512


@dataclass
class SegmenterConfig:
    min_text_length: int = 6
    dialog_gap_minutes: int = 30
    min_window_size: int = 5
    max_window_size: int = 15
    window_step: int = 3


@dataclass
class IndexingConfig:
    poll_interval_seconds: int = 120
    active_interval_seconds: int = 5
    batch_size: int = 100
    max_batches_per_run: int = 50
    rate_limit_backoff_seconds: int = 60
    error_backoff_seconds: int = 60
    startup_delay_seconds: int = 0
    enabled_handlers: list[str] = field(default_factory=lambda: ["message", "window"])


@dataclass
class RetrievalConfig:
    rrf_k: int = 60
    variant_count: int = 3
    per_list_limit: int = 15
    near_duplicate_threshold: float = 0.98
    rerank: bool = True
    rerank_top_k: int = 10
    rerank_weight: float = 0.5
    branch_timeout_seconds: float = 10.0
    expand_windows: bool = True
    high_threshold: float = 0.7
    medium_threshold: float = 0.4
    low_threshold: float = 0.2
    min_results_for_low: int = 5


@dataclass
class Config:
    typesense: TypesenseConfig = field(default_factory=TypesenseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    segmenter: SegmenterConfig = field(default_factory=SegmenterConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, "")
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def validate_config(config: Config) -> None:
    """Reject parameter combinations the segmenter and ranker cannot honour.

    Raises:
        FatalConfigurationError: If any section is inconsistent
    """
    seg = config.segmenter
    if seg.min_window_size < 1:
        raise FatalConfigurationError("segmenter.min_window_size must be at least 1")
    if seg.min_window_size > seg.max_window_size:
        raise FatalConfigurationError(
            f"segmenter.min_window_size ({seg.min_window_size}) exceeds "
            f"max_window_size ({seg.max_window_size})"
        )
    if not 0 < seg.window_step < seg.max_window_size:
        raise FatalConfigurationError(
            f"segmenter.window_step must be in (0, {seg.max_window_size}), got {seg.window_step}"
        )

    ret = config.retrieval
    if ret.rrf_k <= 0:
        raise FatalConfigurationError("retrieval.rrf_k must be positive")
    if ret.variant_count < 1:
        raise FatalConfigurationError("retrieval.variant_count must be at least 1")
    if not 0.0 <= ret.rerank_weight <= 1.0:
        raise FatalConfigurationError("retrieval.rerank_weight must be within [0, 1]")
    if not ret.low_threshold <= ret.medium_threshold <= ret.high_threshold:
        raise FatalConfigurationError("retrieval thresholds must satisfy low <= medium <= high")

    if config.indexing.batch_size <= seg.max_window_size:
        raise FatalConfigurationError(
            "indexing.batch_size must exceed segmenter.max_window_size so window cursors advance"
        )


def _section(data: dict, name: str) -> dict:
    return data.get(name) or {}


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "chat-recall" / "config.yaml",
            Path("/etc/chat-recall/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        config = Config()
        validate_config(config)
        return config

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    ts_data = _section(data, "typesense")
    typesense = TypesenseConfig(
        host=ts_data.get("host", "localhost"),
        port=ts_data.get("port", 8108),
        protocol=ts_data.get("protocol", "http"),
        api_key=expand_env_var(ts_data.get("api_key", "dev-api-key")),
        connection_timeout_seconds=ts_data.get("connection_timeout_seconds", 5),
        embedding_dim=ts_data.get("embedding_dim", 1536),
        message_collection=ts_data.get("message_collection", "message_vectors"),
        window_collection=ts_data.get("window_collection", "window_vectors"),
    )

    storage_data = _section(data, "storage")
    storage = StorageConfig(
        messages_db=expand_path(storage_data.get("messages_db", "~/chat-recall/messages.db")),
        state_db=expand_path(storage_data.get("state_db", "~/chat-recall/state/indexer.db")),
    )

    emb_data = _section(data, "embedding")
    embedding = EmbeddingConfig(
        api_key=expand_env_var(emb_data.get("api_key", "${OPENAI_API_KEY}")),
        model=emb_data.get("model", "text-embedding-3-small"),
        base_url=emb_data.get("base_url"),
        batch_size=emb_data.get("batch_size", 32),
        timeout_seconds=emb_data.get("timeout_seconds", 30.0),
    )

    llm_data = _section(data, "llm")
    llm = LLMConfig(
        anthropic_api_key=expand_env_var(llm_data.get("anthropic_api_key", "${ANTHROPIC_API_KEY}")),
        model=llm_data.get("model", "claude-3-5-haiku-latest"),
        timeout_seconds=llm_data.get("timeout_seconds", 30.0),
        max_tokens=llm_data.get("max_tokens", 512),
    )

    seg_data = _section(data, "segmenter")
    segmenter = SegmenterConfig(
        min_text_length=seg_data.get("min_text_length", 6),
        dialog_gap_minutes=seg_data.get("dialog_gap_minutes", 30),
        min_window_size=seg_data.get("min_window_size", 5),
        max_window_size=seg_data.get("max_window_size", 15),
        window_step=seg_data.get("window_step", 3),
    )

    idx_data = _section(data, "indexing")
    indexing = IndexingConfig(
        poll_interval_seconds=idx_data.get("poll_interval_seconds", 120),
        active_interval_seconds=idx_data.get("active_interval_seconds", 5),
        batch_size=idx_data.get("batch_size", 100),
        max_batches_per_run=idx_data.get("max_batches_per_run", 50),
        rate_limit_backoff_seconds=idx_data.get("rate_limit_backoff_seconds", 60),
        error_backoff_seconds=idx_data.get("error_backoff_seconds", 60),
        startup_delay_seconds=idx_data.get("startup_delay_seconds", 0),
        enabled_handlers=idx_data.get("enabled_handlers", ["message", "window"]),
    )

    ret_data = _section(data, "retrieval")
    retrieval = RetrievalConfig(
        rrf_k=ret_data.get("rrf_k", 60),
        variant_count=ret_data.get("variant_count", 3),
        per_list_limit=ret_data.get("per_list_limit", 15),
        near_duplicate_threshold=ret_data.get("near_duplicate_threshold", 0.98),
        rerank=ret_data.get("rerank", True),
        rerank_top_k=ret_data.get("rerank_top_k", 10),
        rerank_weight=ret_data.get("rerank_weight", 0.5),
        branch_timeout_seconds=ret_data.get("branch_timeout_seconds", 10.0),
        expand_windows=ret_data.get("expand_windows", True),
        high_threshold=ret_data.get("high_threshold", 0.7),
        medium_threshold=ret_data.get("medium_threshold", 0.4),
        low_threshold=ret_data.get("low_threshold", 0.2),
        min_results_for_low=ret_data.get("min_results_for_low", 5),
    )

    config = Config(
        typesense=typesense,
        storage=storage,
        embedding=embedding,
        llm=llm,
        segmenter=segmenter,
        indexing=indexing,
        retrieval=retrieval,
    )
    validate_config(config)
    return config
