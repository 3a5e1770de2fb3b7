"""High-level exports for the pong0 workflows."""

from .challenge_params import ChallengeParameters, parse_challenge_parameters, resolve_challenge_parameters
from .errors import ClassifiedError, error_payload
from .extract_utils import NormalizedRecord, parse_ip_page
from .pong0_config import PipelineConfig
from .query import query_ip_info
from .sandbox import ChallengeSandbox, Credentials, SandboxEnvironment
from .script_source import ChallengeScript, ScriptSource

__all__ = [
    "ChallengeParameters",
    "ChallengeSandbox",
    "ChallengeScript",
    "ClassifiedError",
    "Credentials",
    "NormalizedRecord",
    "PipelineConfig",
    "SandboxEnvironment",
    "ScriptSource",
    "error_payload",
    "parse_challenge_parameters",
    "parse_ip_page",
    "query_ip_info",
    "resolve_challenge_parameters",
]
