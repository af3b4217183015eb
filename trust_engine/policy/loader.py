"""
Policy Loader

Reads a TrustPolicy from YAML. A missing or invalid file never stops
the engine: the default policy is used and the failure is logged.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import yaml

from ..config import settings
from .rules import DEFAULT_POLICY, TrustPolicy

logger = logging.getLogger("trust_engine.policy")


def load_policy(path: Optional[Union[str, Path]] = None) -> TrustPolicy:
    """
    Load policy from a YAML file.

    Args:
        path: YAML file (defaults to settings.policy_path)

    Returns:
        Parsed policy, or DEFAULT_POLICY when unavailable
    """
    policy_path = Path(path) if path else (Path(settings.policy_path) if settings.policy_path else None)
    if policy_path is None:
        return DEFAULT_POLICY
    if not policy_path.exists():
        logger.warning("Policy file %s not found; using default policy", policy_path)
        return DEFAULT_POLICY

    try:
        with open(policy_path) as f:
            config = yaml.safe_load(f) or {}
        policy = TrustPolicy(**config)
    except Exception as e:
        # Keep serving with the defaults
        logger.error("Policy load failed (%s): %s", policy_path, e)
        return DEFAULT_POLICY

    logger.info("Loaded policy %s (%s)", policy.version, policy.fingerprint())
    return policy
