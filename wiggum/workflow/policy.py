"""
Transition policy: valid states, legal transitions and per-transition hooks.

Policy comes from the project's ticket_types.json. When that file is absent,
or present but unusable, the engine falls back to FALLBACK_POLICY and logs a
warning; an invalid configuration never blocks ticket operations.

Configuration is loaded on first use and cached on the engine instance.
Call reset() to force a reload.
"""

import copy
import json
import logging
from pathlib import Path

from wiggum.lib.errors import ConfigurationInvalid
from wiggum.lib.validate import validate, ValidationError

logger = logging.getLogger(__name__)

PRE = "pre"
POST = "post"
PHASES = (PRE, POST)

# Key in the mapping form of a hook spec that applies to every target
ANY_TARGET = "*"

DEFAULT_INITIAL_STATE = "ready"
DEFAULT_DONE_STATE = "done"

FALLBACK_POLICY = {
    "states": ["ready", "in-progress", "review", "qa", "done", "closed"],
    "initial_state": DEFAULT_INITIAL_STATE,
    "done_state": DEFAULT_DONE_STATE,
    "transitions": {
        "ready": {
            "targets": ["in-progress", "closed"],
            "hooks": {"post": {"in-progress": ["on-claim"]}},
        },
        "in-progress": {
            "targets": ["review"],
            "hooks": {"post": {"review": ["on-draft-done"]}},
        },
        "review": {
            "targets": ["qa", "in-progress", "closed"],
            "hooks": {"post": {
                "qa": ["on-review-done"],
                "in-progress": ["on-review-rejected"],
            }},
        },
        "qa": {
            "targets": ["done", "in-progress", "closed"],
            "hooks": {"post": {
                "done": ["on-qa-done", "on-close"],
                "in-progress": ["on-qa-rejected"],
            }},
        },
    },
    "types": ["feature", "bug", "task", "epic", "chore"],
    "default_type": "task",
}


def check_policy(data: dict, path="<policy>") -> dict:
    """Validate a policy document's schema and cross-references.

    Raises:
        ConfigurationInvalid: if the document is unusable
    """
    try:
        validate(data, "ticket_types")
    except ValidationError as e:
        raise ConfigurationInvalid(path, f"{e.message} at {e.path}") from None

    states = set(data["states"])
    for key in ("initial_state", "done_state"):
        if key in data and data[key] not in states:
            raise ConfigurationInvalid(path, f"{key} '{data[key]}' is not a declared state")
    for default_key, default in (("initial_state", DEFAULT_INITIAL_STATE), ("done_state", DEFAULT_DONE_STATE)):
        if default_key not in data and default not in states:
            raise ConfigurationInvalid(path, f"{default_key} not set and '{default}' is not a declared state")

    for from_state, spec in data["transitions"].items():
        if from_state not in states:
            raise ConfigurationInvalid(path, f"transitions from undeclared state '{from_state}'")
        for target in spec["targets"]:
            if target not in states:
                raise ConfigurationInvalid(path, f"'{from_state}' targets undeclared state '{target}'")

    types = data.get("types")
    default_type = data.get("default_type")
    if types and default_type and default_type not in types:
        raise ConfigurationInvalid(path, f"default_type '{default_type}' is not a declared type")
    return data


def load_policy_file(path: Path) -> dict:
    """Read and check ticket_types.json.

    Raises:
        ConfigurationInvalid: if the file is unreadable, not JSON, or inconsistent
    """
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise ConfigurationInvalid(path, str(e)) from None
    except json.JSONDecodeError as e:
        raise ConfigurationInvalid(path, f"invalid JSON: {e}") from None
    return check_policy(data, path)


class PolicyEngine:
    """Answers which states exist, which moves are legal and which hooks fire."""

    def __init__(self, config_path: Path | None = None, policy: dict | None = None):
        """
        Args:
            config_path: ticket_types.json to load lazily (may not exist)
            policy: an already-parsed policy document, checked on first use
        """
        self.config_path = config_path
        self._explicit = policy
        self._policy: dict | None = None
        self.using_fallback = False

    def reset(self) -> None:
        """Drop the cached policy; the next query reloads it."""
        self._policy = None
        self.using_fallback = False

    @property
    def policy(self) -> dict:
        if self._policy is None:
            self._policy = self._load()
        return self._policy

    def _load(self) -> dict:
        try:
            if self._explicit is not None:
                data = check_policy(self._explicit)
                logger.debug("[POLICY] Using supplied policy")
                return data
            if self.config_path is not None and self.config_path.exists():
                data = load_policy_file(self.config_path)
                logger.debug(f"[POLICY] Loaded {self.config_path}")
                return data
        except ConfigurationInvalid as e:
            logger.warning(f"[POLICY] {e}; using built-in fallback policy")
        else:
            logger.debug("[POLICY] No ticket_types.json; using built-in fallback policy")
        self.using_fallback = True
        return copy.deepcopy(FALLBACK_POLICY)

    def valid_states(self) -> list[str]:
        return list(self.policy["states"])

    def is_valid_state(self, state: str) -> bool:
        return state in self.policy["states"]

    def valid_targets(self, from_state: str) -> list[str]:
        spec = self.policy["transitions"].get(from_state)
        if not spec:
            return []
        return list(spec["targets"])

    def is_valid_transition(self, from_state: str, to_state: str) -> bool:
        return self.is_valid_state(to_state) and to_state in self.valid_targets(from_state)

    def hooks_for(self, from_state: str, to_state: str, phase: str) -> list[str]:
        """Hook names for a transition, exact target first, then phase-wide."""
        if phase not in PHASES:
            raise ValueError(f"Unknown hook phase: {phase}")
        spec = self.policy["transitions"].get(from_state) or {}
        hook_spec = spec.get("hooks", {}).get(phase)
        if hook_spec is None:
            return []
        if isinstance(hook_spec, list):
            return list(hook_spec)
        if to_state in hook_spec:
            return list(hook_spec[to_state])
        return list(hook_spec.get(ANY_TARGET, []))

    def all_hook_names(self) -> list[str]:
        """Every hook name the policy can invoke, in first-seen order."""
        names: list[str] = []
        for spec in self.policy["transitions"].values():
            for hook_spec in spec.get("hooks", {}).values():
                lists = [hook_spec] if isinstance(hook_spec, list) else hook_spec.values()
                for hook_list in lists:
                    for name in hook_list:
                        if name not in names:
                            names.append(name)
        return names

    def valid_types(self) -> list[str]:
        return list(self.policy.get("types") or FALLBACK_POLICY["types"])

    def default_type(self) -> str:
        default = self.policy.get("default_type")
        if default:
            return default
        types = self.valid_types()
        return FALLBACK_POLICY["default_type"] if FALLBACK_POLICY["default_type"] in types else types[0]

    @property
    def initial_state(self) -> str:
        return self.policy.get("initial_state", DEFAULT_INITIAL_STATE)

    @property
    def done_state(self) -> str:
        return self.policy.get("done_state", DEFAULT_DONE_STATE)

    def describe_targets(self, from_state: str) -> str:
        targets = self.valid_targets(from_state)
        return ", ".join(targets) if targets else "(none, terminal state)"


def write_default_policy(path: Path) -> bool:
    """Write the fallback policy as a starter ticket_types.json.

    Returns:
        True if written, False if the file already existed
    """
    if path.exists():
        return False
    path.write_text(json.dumps(FALLBACK_POLICY, indent=2) + "\n")
    return True
