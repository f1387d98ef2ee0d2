"""Convergence checks deciding whether a node needs upgrading at all.

Everything here is pure: the same facts and request always produce the same
decision.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from .models import ExtensionInfo, NodeFacts, UpgradeRequest

# Synthetic extensions added by the image build, not requested by anyone
INTERNAL_EXTENSIONS = frozenset({'schematic', 'modules.dep'})


@dataclass(frozen=True)
class Decision:
    skip: bool
    detail: str = ''


def strip_vendor(extension: str) -> str:
    """``siderolabs/gasket-driver`` -> ``gasket-driver``."""
    return extension.rsplit('/', 1)[-1]


def extensions_differ(
    running: Iterable[ExtensionInfo], expected: Iterable[str]
) -> Tuple[List[str], List[str]]:
    """Return the sorted ``(missing, extra)`` extension names."""
    running_names: Set[str] = {
        ext.name for ext in running if ext.name not in INTERNAL_EXTENSIONS
    }
    expected_names = {strip_vendor(ext) for ext in expected}
    missing = sorted(expected_names - running_names)
    extra = sorted(running_names - expected_names)
    return missing, extra


def kernel_args_differ(cmdline: Optional[str], expected: Iterable[str]) -> List[str]:
    """Return the sorted expected kernel args absent from ``cmdline``."""
    tokens = set((cmdline or '').split())
    return sorted(set(expected) - tokens)


def decide(facts: NodeFacts, request: UpgradeRequest) -> Decision:
    """Compare live facts with the request and decide whether to skip the node.

    Dimensions whose probe failed (``None``) are treated as differing, so a
    flaky probe leads to a re-upgrade rather than a silent skip.
    """
    clauses = []
    extensions_match = True

    if facts.extensions is None:
        extensions_match = False
    else:
        missing, extra = extensions_differ(facts.extensions, request.expected_extensions)
        if missing:
            clauses.append("missing: " + ", ".join(missing))
        if extra:
            clauses.append("extra: " + ", ".join(extra))
        extensions_match = not missing and not extra

    missing_args = []
    if facts.kernel_cmdline is not None:
        missing_args = kernel_args_differ(facts.kernel_cmdline, request.expected_kernel_args)
        if missing_args:
            clauses.append("missing kernel args: " + ", ".join(missing_args))
    kernel_args_match = facts.kernel_cmdline is not None and not missing_args

    if facts.extensions is None:
        clauses.append("extensions: unknown")
    if facts.kernel_cmdline is None:
        clauses.append("kernel args: unknown")

    version_match = facts.version is not None and facts.version == request.version
    skip = version_match and extensions_match and kernel_args_match
    if skip:
        return Decision(skip=True)
    return Decision(skip=False, detail="; ".join(clauses))
