"""
Configuration module for Codex Engine.
Handles environment variables, model specifications, and engine settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-20250514-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None


@dataclass
class AppConfig:
    """Engine-level configuration"""
    title: str = "Codex Engine"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "codex-engine.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    streaming: bool = os.getenv("STREAMING", "true").lower() == "true"
    # Tool-call round limits
    max_tool_rounds: int = int(os.getenv("MAX_TOOL_ROUNDS", "400"))
    # Sub-agent settings
    subagents_enabled: bool = os.getenv("SUBAGENTS_ENABLED", "true").lower() == "true"
    subagent_max_tool_rounds: int = int(os.getenv("SUBAGENT_MAX_TOOL_ROUNDS", "50"))
    subagent_max_concurrent: int = int(os.getenv("SUBAGENT_MAX_CONCURRENT", "3"))
    subagent_timeout: float = float(os.getenv("SUBAGENT_TIMEOUT", "60"))
    # Context gathering
    context_reserved_fraction: float = float(os.getenv("CONTEXT_RESERVED_FRACTION", "0.3"))
    context_max_sources: int = int(os.getenv("CONTEXT_MAX_SOURCES", "10"))
    context_cache_enabled: bool = os.getenv("CONTEXT_CACHE_ENABLED", "true").lower() == "true"
    # Context cache
    cache_max_entries: int = int(os.getenv("CACHE_MAX_ENTRIES", "100"))
    cache_ttl: float = float(os.getenv("CACHE_TTL", "300"))
    cache_watch_enabled: bool = os.getenv("CACHE_WATCH_ENABLED", "true").lower() == "true"
    # Post-edit verification
    verification_enabled: bool = os.getenv("VERIFICATION_ENABLED", "true").lower() == "true"
    verification_mode: str = os.getenv("VERIFICATION_MODE", "fast")
    verification_run_tests: bool = os.getenv("VERIFICATION_RUN_TESTS", "false").lower() == "true"
    verification_run_types: bool = os.getenv("VERIFICATION_RUN_TYPES", "false").lower() == "true"
    lint_timeout: float = float(os.getenv("LINT_TIMEOUT", "2"))
    test_timeout: float = float(os.getenv("TEST_TIMEOUT", "10"))
    type_timeout: float = float(os.getenv("TYPE_TIMEOUT", "5"))
    # Hooks
    hook_timeout: float = float(os.getenv("HOOK_TIMEOUT", "30"))


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only the fields the engine reads are listed.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "base_id": "anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "context_window": 200000,
        "max_output_tokens": 32000,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the configuration for a model, with a fallback for unknown IDs."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 4096,
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", 200000)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
