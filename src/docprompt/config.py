"""docprompt configuration loader.

Priority (high → low):
  1. CLI flags / request parameters  (handled at call site — not in this module)
  2. Environment variables  (DOCPROMPT_COMPLETIONS_MODEL, DOCPROMPT_EMBEDDING_MODEL,
     DOCPROMPT_LOG_LEVEL)
  3. Per-project docprompt.yaml  (next to .docprompt.db)
  4. Global ~/.docprompt/config.yaml  (model defaults only — no API keys)
  5. Hardcoded defaults

API keys never live in config files. The system key is read from
OPENAI_API_KEY by the provider library; a project's own key ("bring your own
key") is read from DOCPROMPT_PROJECT_API_KEY.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".docprompt"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "docprompt.yaml"

I_DONT_KNOW: str = "Sorry, I am not sure how to answer that."

DEFAULT_PROMPT_TEMPLATE: str = """\
You are a very enthusiastic company representative who loves to help people! \
Given the following sections from the documentation (preceded by a section id), \
answer the question using only that information, outputted in Markdown format. \
If you are unsure and the answer is not explicitly written in the documentation, \
say "{{I_DONT_KNOW}}".

Context sections:
---
{{CONTEXT}}

Question: "{{PROMPT}}"

Answer (including related code snippets if available):
"""

# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match legitimate config keys like max_tokens or context_tokens_cutoff.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["project", "embedding", "completions", "retrieval", "training", "connectors", "logging"]
)

_INSIGHTS_TYPES: frozenset[str] = frozenset(["none", "basic", "advanced"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ProjectCfg:
    """Project-level settings (docprompt.yaml: project:).

    Attributes:
        id: Stable project identifier stored on every query record.
        name: Human-readable project name.
        insights: How much query detail may be persisted for external callers:
            'none' (prompt only), 'basic' (+ response and references) or
            'advanced' (+ query embedding).
        allow_custom_model_config: Whether external callers may override the
            completions parameters.
    """

    id: str = "default"
    name: str = ""
    insights: str = "advanced"
    allow_custom_model_config: bool = True


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (docprompt.yaml: embedding:)."""

    model: str = "openai/text-embedding-ada-002"
    dimensions: int = 1536


@dataclass
class CompletionsCfg:
    """Model request defaults (docprompt.yaml: completions:)."""

    model: str = "openai/gpt-3.5-turbo"
    moderation_model: str = "omni-moderation-latest"
    temperature: float = 0.1
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    max_tokens: int = 500
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    i_dont_know_message: str = I_DONT_KNOW
    context_tag: str = "{{CONTEXT}}"
    prompt_tag: str = "{{PROMPT}}"
    idk_tag: str = "{{I_DONT_KNOW}}"


@dataclass
class RetrievalCfg:
    """Section matching configuration (docprompt.yaml: retrieval:)."""

    match_threshold: float = 0.5
    match_count: int = 10
    min_content_length: int = 30
    context_tokens_cutoff: int = 1_500
    max_prompt_length: int = 200


@dataclass
class TrainingCfg:
    """Ingestion configuration (docprompt.yaml: training:).

    Attributes:
        include: Glob patterns a path must match to be trained (empty = all).
        exclude: Glob patterns that exclude a path from training.
        concurrency: Maximum number of items processed at the same time.
        content_token_quota: Maximum number of indexed tokens for the project
            (None = unlimited). Exceeding it aborts the current training run.
        sitemap_limit: Maximum number of sitemap URLs trained per website source.
        chunk_size: Section size in tokens.
        overlap: Fraction of overlap between fixed-window sections.
    """

    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    concurrency: int = 5
    content_token_quota: int | None = None
    sitemap_limit: int = 10
    chunk_size: int = 512
    overlap: float = 0.10


@dataclass
class ConnectorsCfg:
    """Remote sync service used by connector sources (docprompt.yaml: connectors:)."""

    sync_url: str = "http://localhost:3003"


@dataclass
class LoggingCfg:
    level: str = "INFO"


@dataclass
class DocpromptConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    project: ProjectCfg = field(default_factory=ProjectCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    completions: CompletionsCfg = field(default_factory=CompletionsCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    training: TrainingCfg = field(default_factory=TrainingCfg)
    connectors: ConnectorsCfg = field(default_factory=ConnectorsCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: DocpromptConfig) -> None:
    if cfg.project.insights not in _INSIGHTS_TYPES:
        raise ConfigError(
            f"project.insights must be one of {sorted(_INSIGHTS_TYPES)}, "
            f"got '{cfg.project.insights}'"
        )
    if cfg.training.concurrency < 1:
        raise ConfigError(
            f"training.concurrency must be >= 1, got {cfg.training.concurrency}"
        )
    if not 0.0 <= cfg.retrieval.match_threshold <= 1.0:
        raise ConfigError(
            "retrieval.match_threshold must be in [0.0, 1.0], "
            f"got {cfg.retrieval.match_threshold}"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> DocpromptConfig:
    """Build a *DocpromptConfig* from a merged raw YAML dict."""
    cfg = DocpromptConfig()

    if "project" in data:
        p = data["project"]
        cfg.project = ProjectCfg(
            id=str(p.get("id", cfg.project.id)),
            name=str(p.get("name", cfg.project.name)),
            insights=str(p.get("insights", cfg.project.insights)),
            allow_custom_model_config=bool(
                p.get("allow_custom_model_config", cfg.project.allow_custom_model_config)
            ),
        )

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
        )

    if "completions" in data:
        c = data["completions"]
        d = cfg.completions
        cfg.completions = CompletionsCfg(
            model=str(c.get("model", d.model)),
            moderation_model=str(c.get("moderation_model", d.moderation_model)),
            temperature=float(c.get("temperature", d.temperature)),
            top_p=float(c.get("top_p", d.top_p)),
            frequency_penalty=float(c.get("frequency_penalty", d.frequency_penalty)),
            presence_penalty=float(c.get("presence_penalty", d.presence_penalty)),
            max_tokens=int(c.get("max_tokens", d.max_tokens)),
            prompt_template=str(c.get("prompt_template") or d.prompt_template),
            i_dont_know_message=str(c.get("i_dont_know_message") or d.i_dont_know_message),
            context_tag=str(c.get("context_tag", d.context_tag)),
            prompt_tag=str(c.get("prompt_tag", d.prompt_tag)),
            idk_tag=str(c.get("idk_tag", d.idk_tag)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        d = cfg.retrieval
        cfg.retrieval = RetrievalCfg(
            match_threshold=float(r.get("match_threshold", d.match_threshold)),
            match_count=int(r.get("match_count", d.match_count)),
            min_content_length=int(r.get("min_content_length", d.min_content_length)),
            context_tokens_cutoff=int(
                r.get("context_tokens_cutoff", d.context_tokens_cutoff)
            ),
            max_prompt_length=int(r.get("max_prompt_length", d.max_prompt_length)),
        )

    if "training" in data:
        t = data["training"]
        d = cfg.training
        quota = t.get("content_token_quota", d.content_token_quota)
        cfg.training = TrainingCfg(
            include=[str(x) for x in t.get("include") or []],
            exclude=[str(x) for x in t.get("exclude") or []],
            concurrency=int(t.get("concurrency", d.concurrency)),
            content_token_quota=int(quota) if quota is not None else None,
            sitemap_limit=int(t.get("sitemap_limit", d.sitemap_limit)),
            chunk_size=int(t.get("chunk_size", d.chunk_size)),
            overlap=float(t.get("overlap", d.overlap)),
        )

    if "connectors" in data:
        cfg.connectors = ConnectorsCfg(
            sync_url=str(data["connectors"].get("sync_url", cfg.connectors.sync_url)),
        )

    if "logging" in data:
        cfg.logging = LoggingCfg(
            level=str(data["logging"].get("level", cfg.logging.level)).upper(),
        )

    return cfg


def _apply_env_overrides(cfg: DocpromptConfig) -> DocpromptConfig:
    """Apply DOCPROMPT_* environment variable overrides."""
    if model := os.environ.get("DOCPROMPT_COMPLETIONS_MODEL"):
        cfg.completions.model = model
    if model := os.environ.get("DOCPROMPT_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if level := os.environ.get("DOCPROMPT_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> DocpromptConfig:
    """Load and return a merged *DocpromptConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *docprompt.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If any config file contains API-key-like fields or an
            invalid value.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_project, project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    _validate(cfg)
    return cfg


def project_api_key() -> str | None:
    """Return the project's own provider key (bring-your-own-key), if set."""
    return os.environ.get("DOCPROMPT_PROJECT_API_KEY") or None


def write_project_config(project_dir: Path, project_id: str, name: str) -> Path:
    """Write a starter *docprompt.yaml* into *project_dir* if none exists."""
    target = project_dir / _PROJECT_CONFIG_NAME
    if not target.exists():
        content = {
            "project": {"id": project_id, "name": name, "insights": "advanced"},
            "training": {"include": [], "exclude": [], "concurrency": 5},
        }
        target.write_text(yaml.safe_dump(content, sort_keys=False), encoding="utf-8")
    return target
