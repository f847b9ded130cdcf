"""Capability tag normalization.

Capabilities are compared as interned, canonical tags rather than free text.
Raw input from issue labels, agent definitions and extracted requirements
passes through ``normalize_tag`` first, which lowercases, strips kind
prefixes (``lang:``, ``framework/``) and collapses aliases.
"""

import re
import sys
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple


class CapabilityKind(str, Enum):
    """Dimension a capability tag belongs to."""
    LANGUAGE = "language"
    FRAMEWORK = "framework"
    DOMAIN = "domain"
    SKILL = "skill"


KNOWN_LANGUAGES = frozenset({
    "python", "javascript", "typescript", "go", "rust", "java", "ruby",
    "c", "cpp", "csharp", "kotlin", "swift", "php", "scala", "sql", "bash",
    "node",
})

KNOWN_FRAMEWORKS = frozenset({
    "react", "vue", "angular", "svelte", "nextjs", "express", "fastapi",
    "django", "flask", "rails", "spring", "gin", "pytest", "jest",
    "terraform", "kubernetes", "docker", "graphql",
})

KNOWN_DOMAINS = frozenset({
    "backend", "frontend", "infrastructure", "security", "database",
    "devops", "testing", "documentation", "api", "auth", "performance",
    "data", "ml", "mobile", "ui",
})

ALIASES: Dict[str, str] = {
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "python3": "python",
    "golang": "go",
    "nodejs": "node",
    "node-js": "node",
    "c++": "cpp",
    "c#": "csharp",
    "k8s": "kubernetes",
    "next-js": "nextjs",
    "reactjs": "react",
    "vuejs": "vue",
    "postgres": "database",
    "postgresql": "database",
    "infra": "infrastructure",
    "docs": "documentation",
    "sec": "security",
    "authentication": "auth",
}

_PREFIX_KINDS: Dict[str, CapabilityKind] = {
    "lang": CapabilityKind.LANGUAGE,
    "language": CapabilityKind.LANGUAGE,
    "framework": CapabilityKind.FRAMEWORK,
    "fw": CapabilityKind.FRAMEWORK,
    "domain": CapabilityKind.DOMAIN,
    "area": CapabilityKind.DOMAIN,
    "skill": CapabilityKind.SKILL,
    "capability": CapabilityKind.SKILL,
    "cap": CapabilityKind.SKILL,
}

# Label namespaces that carry workflow state rather than capabilities
NON_CAPABILITY_PREFIXES = frozenset({"epic", "status", "agent", "priority", "type", "review"})

_PREFIX_RE = re.compile(r"^\s*([a-zA-Z]+)\s*[:/]\s*(.+)$")
_SEPARATOR_RE = re.compile(r"[\s_]+")

PRIORITY_LABELS = ("low", "medium", "high", "critical")
P_LEVELS = {"p0": "critical", "p1": "high", "p2": "medium", "p3": "low"}


def _canonical(name: str) -> str:
    name = _SEPARATOR_RE.sub("-", name.strip().lower())
    name = name.strip("-")
    return ALIASES.get(name, name)


def split_label(raw: str) -> Tuple[Optional[str], str]:
    """Split ``prefix:value`` or ``prefix/value``. Returns (prefix or None, value)."""
    match = _PREFIX_RE.match(raw)
    if match:
        return match.group(1).lower(), match.group(2)
    return None, raw


def normalize_tag(raw: str) -> Optional[str]:
    """Return the canonical interned tag for ``raw``, or None if it is not a capability."""
    if not raw or not raw.strip():
        return None
    prefix, value = split_label(raw)
    if prefix in NON_CAPABILITY_PREFIXES or (prefix is None and value.strip().lower() in P_LEVELS):
        return None
    tag = _canonical(value)
    if not tag:
        return None
    return sys.intern(tag)


def capability_kind(tag: str, hint: Optional[str] = None) -> CapabilityKind:
    """Classify a canonical tag. An explicit label prefix wins over inference."""
    if hint and hint in _PREFIX_KINDS:
        return _PREFIX_KINDS[hint]
    if tag in KNOWN_LANGUAGES:
        return CapabilityKind.LANGUAGE
    if tag in KNOWN_FRAMEWORKS:
        return CapabilityKind.FRAMEWORK
    if tag in KNOWN_DOMAINS:
        return CapabilityKind.DOMAIN
    return CapabilityKind.SKILL


def normalize_tags(raw_tags: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Normalize an iterable of raw tags, dropping non-capability labels."""
    if not raw_tags:
        return frozenset()
    if isinstance(raw_tags, str):
        raw_tags = [raw_tags]
    tags = (normalize_tag(t) for t in raw_tags)
    return frozenset(t for t in tags if t)


def tags_of_kind(tags: Iterable[str], kind: CapabilityKind) -> FrozenSet[str]:
    return frozenset(t for t in tags if capability_kind(t) == kind)


def parse_labels(labels: Iterable[str]) -> Dict[str, FrozenSet[str]]:
    """Split platform labels into capability dimensions.

    Returns a dict with ``languages``, ``frameworks``, ``domains`` and
    ``skills`` keys. Unprefixed labels are classified by inference.
    """
    buckets: Dict[CapabilityKind, set] = {kind: set() for kind in CapabilityKind}
    for label in labels:
        prefix, _ = split_label(label)
        tag = normalize_tag(label)
        if tag is None:
            continue
        buckets[capability_kind(tag, prefix)].add(tag)
    return {
        "languages": frozenset(buckets[CapabilityKind.LANGUAGE]),
        "frameworks": frozenset(buckets[CapabilityKind.FRAMEWORK]),
        "domains": frozenset(buckets[CapabilityKind.DOMAIN]),
        "skills": frozenset(buckets[CapabilityKind.SKILL]),
    }


def priority_from_labels(labels: Iterable[str]) -> Optional[str]:
    """Extract a priority value from ``priority:<level>`` or bare ``P0``-``P3`` labels."""
    for label in labels:
        prefix, value = split_label(label)
        value = value.strip().lower()
        if prefix == "priority" and value in PRIORITY_LABELS:
            return value
        if prefix is None and value in P_LEVELS:
            return P_LEVELS[value]
    return None


def overlap_ratio(required: Iterable[str], offered: Iterable[str]) -> float:
    """Fraction of ``required`` tags present in ``offered``. Empty requirement -> 0.0."""
    required = set(required)
    if not required:
        return 0.0
    return len(required & set(offered)) / len(required)
