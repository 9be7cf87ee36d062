"""docprompt rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from docprompt.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from docprompt.db.models import SOURCE_TYPES


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-...\n"
        "  Or bring your own key:  export DOCPROMPT_PROJECT_API_KEY=sk-..."
    )


def err_no_db(db_path: str = ".docprompt.db") -> str:
    """No .docprompt.db found in the project directory."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  docprompt init"
    )


def err_quota_exceeded(message: str) -> str:
    """Training stopped because the project content quota is used up."""
    return (
        f"[red]Error:[/] Content quota exceeded. {message}\n"
        "  Files indexed before the limit was reached are kept.\n"
        "  Raise training.content_token_quota in docprompt.yaml (or remove it) "
        "and run:  docprompt train"
    )


def err_source_not_found(source_id: str) -> str:
    """Source not found in database."""
    return (
        f"[yellow]Source not found:[/] '{source_id}' is not in this project.\n"
        "  Run:  docprompt sources list  to see all sources."
    )


def err_unknown_source_type(source_type: str) -> str:
    """Unsupported source type passed to ``sources add``."""
    return (
        f"[red]Error:[/] Unknown source type '{source_type}'.\n"
        f"  Use one of: {', '.join(SOURCE_TYPES)}"
    )


def err_no_sources() -> str:
    """Nothing to train."""
    return (
        "[yellow]No sources to train.[/]\n"
        "  Run:  docprompt sources add website https://docs.example.com"
    )


def err_config(message: str) -> str:
    """Invalid or forbidden configuration value."""
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix docprompt.yaml (or ~/.docprompt/config.yaml) and retry."
    )
