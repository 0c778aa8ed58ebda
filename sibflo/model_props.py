# sibflo/model_props.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import commentjson
from dotenv import load_dotenv

load_dotenv()

DEFAULT_MODEL_CONFIG_PATH = Path(__file__).with_name("model_config.jsonc")
TIER_NAMES = ("lite", "flash", "pro")
PROVIDERS = ("gemini", "openai", "vertex")

GENERATION_DEFAULTS: Dict[str, Any] = {
    "llm_retries": 1,
    "max_concurrency": 8,
    "taskwise_parallel": False,
    "diverse_design_count": 4,
    "diverse_design_attempts": 2,
}


# !######################################################################################################
#! UTILS
# !######################################################################################################

def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like 'gpt-5.1_low' or 'gpt-5.1_fast_flex'
    into (base_model, openai_params). Non-OpenAI names come back unchanged with no params.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed. ")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None

    reasoning_tokens = {"none", "minimal", "low", "medium", "high"}
    service_tier_tokens = {"auto", "default", "flex", "priority"}
    wildcards = {"fast": "none", "standard": "low", "deep": "high"}

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue
        if reasoning_effort is None and t in wildcards:
            reasoning_effort = wildcards[t]
        elif reasoning_effort is None and t in reasoning_tokens:
            reasoning_effort = t
        elif service_tier is None and t in service_tier_tokens:
            service_tier = t
        else:
            unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'. ")

    params: Dict[str, Any] = {"service_tier": service_tier or "default"}
    if reasoning_effort is not None:
        params["reasoning"] = {"effort": reasoning_effort}
    return base, params


def load_model_config(path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load tiers + pricing + generation policy from a JSON-with-comments file.
    Fails fast if the file or required top-level keys are missing.
    """
    cfg_path = Path(path or os.getenv("SIBFLO_MODEL_CONFIG_PATH") or DEFAULT_MODEL_CONFIG_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Model config file not found at '{cfg_path}'. ")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    for key in ("TIERS", "MODEL_BASE_PRICE_TABLE"):
        if key not in data or not isinstance(data[key], dict):
            raise ValueError(f"Model config missing or invalid key: {key}")

    for tier in TIER_NAMES:
        spec = data["TIERS"].get(tier)
        if not isinstance(spec, dict) or not spec.get("model_name"):
            raise ValueError(f"Model config: tier '{tier}' missing or without model_name")
        provider = spec.setdefault("provider", "openai" if is_openai_model(spec["model_name"]) else "gemini")
        if provider not in PROVIDERS:
            raise ValueError(f"Model config: tier '{tier}' has unknown provider '{provider}'")

    data["GENERATION"] = {**GENERATION_DEFAULTS, **(data.get("GENERATION") or {})}
    return data


_MODEL_CONFIG = load_model_config()
TIERS: Dict[str, Dict[str, Any]] = _MODEL_CONFIG["TIERS"]
MODEL_BASE_PRICE_TABLE: Dict[str, Any] = _MODEL_CONFIG["MODEL_BASE_PRICE_TABLE"]
GENERATION: Dict[str, Any] = _MODEL_CONFIG["GENERATION"]


def get_tier_spec(tier: str) -> Dict[str, Any]:
    spec = TIERS.get(tier)
    if spec is None:
        raise ValueError(f"Unknown model tier: {tier}")
    return spec


def available_models() -> list[Dict[str, Any]]:
    out = []
    for tier in TIER_NAMES:
        spec = TIERS[tier]
        out.append({
            "tier": tier,
            "model_name": spec["model_name"],
            "name": spec.get("display_name", spec["model_name"]),
            "description": spec.get("description", ""),
            "max_tokens": spec.get("max_tokens"),
            "temperature": spec.get("temperature"),
        })
    return out

#! PRICING API

def _per_million(rate_usd: float, tokens: int) -> float:
    if rate_usd <= 0.0 or tokens <= 0:
        return 0.0
    return rate_usd * (tokens / 1_000_000.0)


def estimate_cost_usd(
    llm_model_name: str,
    prompt_tokens: int,
    completion_tokens: int,
    service_tier: str = None,
) -> float:
    """
    Estimate USD cost for a single request, using per-1M-token prices.

    - Uses prompt_tokens as "input context length" to select short vs long band
      for models that declare long_threshold_tokens.
    - OpenAI models are priced per service tier, falling back to "default".
    - Unknown models cost 0.0.
    """
    base_name, _ = parse_model_name(llm_model_name)
    pricing = MODEL_BASE_PRICE_TABLE.get(base_name)
    if pricing is None:
        return 0.0

    if is_openai_model(base_name):
        pricing = pricing.get(service_tier or "default", pricing.get("default"))
        if not pricing:
            return 0.0
        in_rate = pricing["input_short"]
        out_rate = pricing["output_short"]
    elif pricing.get("long_threshold_tokens") is not None and pricing.get("input_long") is not None \
            and prompt_tokens > pricing["long_threshold_tokens"]:
        in_rate = pricing["input_long"]
        out_rate = pricing.get("output_long") or pricing["output_short"]
    else:
        in_rate = pricing["input_short"]
        out_rate = pricing["output_short"]

    return float(_per_million(in_rate, prompt_tokens) + _per_million(out_rate, completion_tokens))
