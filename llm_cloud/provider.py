"""
provider.py – OpenAI-compatible client factory with provider routing and validation
-------------------------------------------------------------------------------------
This file sits at the infrastructure layer. It is the single place where the
service builds a client for the external LLM platform that backs the
Generation Service (Nebius or OpenAI endpoints).

• Client creation happens in `get_client()` rather than at import time, so importing
  the workflow core never needs credentials and tests can inject a fake client.
• `CONFIG["llm"]["provider"]` (overridable with the LLM_PROVIDER env var) selects the
  endpoint and the environment variable that holds the API key.
• The "mock" provider never reaches this module; `llm_cloud.generation` returns the
  deterministic mock service for it instead.

Provider routing:
- "nebius": Nebius-compatible API with LLM_API_KEY or NEBIUS_API_KEY
- "openai": OpenAI's official API with OPENAI_API_KEY
- anything else raises ValueError
"""

import logging
import os
from typing import List, Tuple

from openai import OpenAI
from config import CONFIG, get_config_value

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_NEBIUS_BASE_URL = "https://api.studio.nebius.com/v1/"


def get_provider_name() -> str:
    """Configured LLM provider, lower-cased; the LLM_PROVIDER env var wins over config.json."""
    provider = get_config_value(["llm", "provider"], "LLM_PROVIDER", "nebius")
    return str(provider).strip().lower()


def require_any_env(var_names: List[str]) -> Tuple[str, str]:
    """
    Return the first of `var_names` that is set to a non-empty value.

    Only the variable name is ever logged by callers; the secret value is returned
    for client construction and nothing else.

    Args:
        var_names (List[str]): Environment variable names in order of preference,
            e.g. ["LLM_API_KEY", "NEBIUS_API_KEY"].

    Returns:
        Tuple[str, str]: (selected_var_name, value)

    Raises:
        RuntimeError: If none of the variables is set.
    """
    for var_name in var_names:
        value = os.getenv(var_name, "")
        if value:
            return var_name, value

    var_list = ", ".join(var_names)
    raise RuntimeError(
        f"Missing required environment variable. Set one of: {var_list}"
    )


def validate_env_for_provider(provider: str) -> Tuple[str, str]:
    """
    Check that the API key for `provider` is available.

    Returns:
        Tuple[str, str]: The environment variable used and the API key.

    Raises:
        ValueError: If the provider is not supported.
        RuntimeError: If the required environment variable is missing.
    """
    if provider == "nebius":
        selected_var, api_key = require_any_env(["LLM_API_KEY", "NEBIUS_API_KEY"])
    elif provider == "openai":
        selected_var, api_key = require_any_env(["OPENAI_API_KEY"])
    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")

    logger.info("LLM provider selected: %s | using environment variable: %s", provider, selected_var)
    return selected_var, api_key


def get_client() -> OpenAI:
    """
    Build and return a configured OpenAI-compatible client for the selected provider.

    Returns:
        OpenAI: A ready-to-use client. The request timeout comes from `llm.timeout`.

    Raises:
        RuntimeError: If required environment variables are missing.
        ValueError: If an unsupported provider is configured.
    """
    llm_config = CONFIG.get("llm", {})
    provider = get_provider_name()
    _, api_key = validate_env_for_provider(provider)

    if provider == "openai":
        base_url = OPENAI_BASE_URL
    else:
        base_url = llm_config.get("base_url", DEFAULT_NEBIUS_BASE_URL)
    logger.info("LLM client base_url=%s", base_url)

    return OpenAI(
        base_url=base_url,
        api_key=api_key,
        timeout=llm_config.get("timeout", 30),
    )
