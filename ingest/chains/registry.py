import json
import logging
from functools import cache
from pathlib import Path

import httpx

from .adapter import ChainAdapter
from .profile import ChainProfile

logger = logging.getLogger(__name__)

PROFILES_PATH = Path(__file__).parent / "chains.json"


@cache
def load_profiles(path: Path = PROFILES_PATH) -> dict[str, ChainProfile]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return {slug: ChainProfile.model_validate(profile) for slug, profile in data.items()}


def get_chains() -> list[str]:
    """
    Get the list of supported retail chains.

    Returns:
        List of chain slugs.
    """
    return list(load_profiles().keys())


def get_profile(slug: str) -> ChainProfile:
    profiles = load_profiles()
    if slug not in profiles:
        raise ValueError(f"Unknown retail chain: {slug}")
    return profiles[slug]


def get_adapter(slug: str, client: httpx.Client | None = None) -> ChainAdapter:
    """
    Build the ingestion adapter for a chain.

    Raises:
        ValueError: If the chain is not supported
    """
    return ChainAdapter(slug, get_profile(slug), client=client)
