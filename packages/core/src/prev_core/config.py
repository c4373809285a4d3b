import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "provider": "openai",  # openai | anthropic | azure | openai-compat
    "model": None,  # None = provider default (or the provider's *_MODEL env var)
    "vcs": None,  # None = auto-detect: gitlab when GITLAB_TOKEN is set, else github
    "strictness": "normal",  # strict | normal | lenient
    "nitpick": 0,  # 1-10; 0 = derive from strictness
    "max_comments": 0,  # 0 = unlimited
    "incremental": False,
    "inline_only": False,
    "summary_only": False,
    "filter_mode": "diff_context",  # added | diff_context | file | nofilter
    "diff_source": "auto",  # auto | git | raw | api
    "structured_output": False,
    "fix_prompt": "off",  # off | auto | always
    "memory": True,
    "memory_file": ".prev/review-memory.md",
    "memory_max": 12,  # memory items injected into the prompt
    "memory_max_entries": 500,
    "memory_fixed_days": 30,
    "timeout": 0,  # seconds per provider call; 0 = SDK default
    "max_retries": 3,
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "guidelines": None,  # path to a markdown file with extra review rules
    "conventions": ["issue", "suggestion", "remark"],  # finding kinds the model may use and inline comments keep
    "mention": "prev",
}

ENV_CREDENTIALS: dict = {
    "github_token": "GITHUB_TOKEN",
    "gitlab_token": "GITLAB_TOKEN",
    "gitlab_url": "GITLAB_URL",
    "openai_api_key": "OPENAI_API_KEY",
    "openai_model": "OPENAI_API_MODEL",
    "openai_base_url": "OPENAI_API_BASE",
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "anthropic_model": "ANTHROPIC_MODEL",
    "anthropic_base_url": "ANTHROPIC_BASE_URL",
    "azure_api_key": "AZURE_OPENAI_API_KEY",
    "azure_endpoint": "AZURE_OPENAI_ENDPOINT",
    "azure_deployment": "AZURE_OPENAI_DEPLOYMENT",
    "azure_api_version": "AZURE_OPENAI_API_VERSION",
    "compat_api_key": "OPENAI_COMPAT_API_KEY",
    "compat_base_url": "OPENAI_COMPAT_BASE_URL",
    "compat_model": "OPENAI_COMPAT_MODEL",
}

DEFAULT_GITLAB_URL = "https://gitlab.com"


def load_config(config_path: str = ".prev.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prev.yml in the current directory
      3. CLI argument overrides
    """
    config = {
        **DEFAULT_CONFIG,
        "exclude": list(DEFAULT_CONFIG["exclude"]),
        "conventions": list(DEFAULT_CONFIG["conventions"]),
    }

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"{config_path}: expected a mapping at the top level")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    for key, env_name in ENV_CREDENTIALS.items():
        config[key] = os.environ.get(env_name)
    # AZURE_OPENAI_MODEL is accepted as an alias for the deployment name.
    if not config["azure_deployment"]:
        config["azure_deployment"] = os.environ.get("AZURE_OPENAI_MODEL")
    config["gitlab_url"] = config["gitlab_url"] or DEFAULT_GITLAB_URL

    return config


def load_guidelines(config: dict) -> str:
    """
    Load review guidelines.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Returns "" when no guidelines file is configured.
    """
    custom_path = config.get("guidelines")
    if not custom_path:
        return ""
    p = Path(custom_path)
    if not p.exists():
        raise FileNotFoundError(f"Guidelines file not found: {custom_path}")
    return p.read_text().strip()
