"""Candidate fixes and how they get applied.

Candidates come from three places:

- LEARNED: a knowledge store match, confidence = similarity / 100
- GENERIC: a pattern rule below, fixed low confidence
- EXECUTOR: a fix the executor reported applying itself

The controller picks the best candidates with ``select_fixes`` and hands
them to a FixApplier before the next attempt. PassiveFixApplier leaves the
work to the executor; WorkspaceFixApplier edits the workspace itself.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from grunts.core.logging import get_logger
from grunts.execution.executor import WorkspaceContext

_logger = get_logger("execution.fixes")


class FixSource(str, Enum):
    """Where a candidate fix came from."""

    LEARNED = "learned"
    """Retrieved from the knowledge store."""

    GENERIC = "generic"
    """Produced by a pattern rule with no learned history behind it."""

    EXECUTOR = "executor"
    """Reported by the executor as applied during an attempt."""


@dataclass(frozen=True)
class CandidateFix:
    """A fix proposed for one error signature.

    Attributes:
        description: What to do, in plain words.
        confidence: Estimated chance the fix works, 0.0-1.0.
        source: Where the proposal came from.
        signature: Normalized signature of the targeted error.
        error_id: Knowledge store record of the targeted error, if captured.
        type: Fix kind carried into the stored Solution.
        code: Optional patch or snippet.
    """

    description: str
    confidence: float
    source: FixSource
    signature: str = ""
    error_id: str | None = None
    type: str = "auto-fix"
    code: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be between 0 and 1, got {self.confidence}")


@dataclass(frozen=True)
class FixRule:
    """Regex rule producing a generic fix description from an error message."""

    name: str
    pattern: re.Pattern[str]
    describe: Callable[[re.Match[str]], str]
    type: str = "generic"


GENERIC_FIX_RULES: tuple[FixRule, ...] = (
    FixRule(
        name="missing_module",
        pattern=re.compile(r"cannot resolve module ['\"]?([\w@/.-]+)['\"]?", re.IGNORECASE),
        describe=lambda m: f"npm install {m.group(1)}",
        type="dependency",
    ),
    FixRule(
        name="undefined_reference",
        pattern=re.compile(r"(\w+) is not defined", re.IGNORECASE),
        describe=lambda m: f"Add import for {m.group(1)} or define the variable",
        type="code",
    ),
    FixRule(
        name="unexpected_token",
        pattern=re.compile(r"unexpected token", re.IGNORECASE),
        describe=lambda m: "Check syntax for missing semicolons, brackets, or quotes",
        type="code",
    ),
    FixRule(
        name="missing_method",
        pattern=re.compile(r"missing required method[:\s]*(\w+)", re.IGNORECASE),
        describe=lambda m: f"Add {m.group(1)}() method to class",
        type="code",
    ),
)


def generic_fix_for(
    message: str,
    confidence: float = 0.3,
    signature: str = "",
    error_id: str | None = None,
    rules: Iterable[FixRule] = GENERIC_FIX_RULES,
) -> CandidateFix | None:
    """First matching rule's fix for ``message``, or None."""
    for rule in rules:
        match = rule.pattern.search(message)
        if match:
            return CandidateFix(
                description=rule.describe(match),
                confidence=confidence,
                source=FixSource.GENERIC,
                signature=signature,
                error_id=error_id,
                type=rule.type,
            )
    return None


def select_fixes(
    candidates: Iterable[CandidateFix],
    limit: int = 5,
    min_confidence: float = 0.6,
) -> list[CandidateFix]:
    """Highest-confidence fixes strictly above ``min_confidence``.

    Duplicates by description keep the most confident copy.
    """
    ranked = sorted(candidates, key=lambda f: f.confidence, reverse=True)
    selected: list[CandidateFix] = []
    seen: set[str] = set()
    for fix in ranked:
        if len(selected) >= limit:
            break
        if fix.confidence <= min_confidence or fix.description in seen:
            continue
        seen.add(fix.description)
        selected.append(fix)
    return selected


@dataclass
class FixResult:
    """Result of applying a fix."""

    success: bool
    """Whether the fix was applied."""

    message: str = ""
    """Human-readable description of what happened."""


@runtime_checkable
class FixApplier(Protocol):
    """Applies a candidate fix to a worker's workspace before an attempt."""

    async def apply(self, fix: CandidateFix, context: WorkspaceContext) -> FixResult:
        """Apply the fix.

        Raising or returning an unsuccessful result skips the fix; the
        attempt still runs.
        """
        ...


class PassiveFixApplier:
    """Applier that makes no workspace changes.

    The controller still lists each fix in ``context.applied_fixes``; use
    this when the executor acts on that list itself (for example by adding
    it to the next generation prompt).
    """

    async def apply(self, fix: CandidateFix, context: WorkspaceContext) -> FixResult:
        return FixResult(success=True, message=f"deferred to executor: {fix.description}")


MAIN_FILE_CANDIDATES: tuple[str, ...] = ("main.js", "index.js", "app.js", "game.js")

# Bodies for scene methods a Phaser class is expected to define
METHOD_TEMPLATES: dict[str, str] = {
    "preload": "  preload() {\n    // Load game assets here\n  }",
    "create": "  create() {\n    // Initialize game objects here\n  }",
    "update": "  update() {\n    // Game loop logic here\n  }",
}

_NPM_INSTALL = re.compile(r"npm install\s+([@\w][\w@/.-]*)", re.IGNORECASE)
_IMPORT_STATEMENT = re.compile(r"import\s+[\w{}*,\s]+?\s+from\s+['\"][^'\"]+['\"];?")
_ADD_METHOD = re.compile(r"add (\w+)\(\) method", re.IGNORECASE)
_MODULE_TYPE = re.compile(r"['\"]?type['\"]?\s*:\s*['\"]?module")
_CLASS_OPENING = re.compile(r"class\s+\w+(?:\s+extends\s+[\w.]+)?\s*\{")
_LEADING_IMPORT = ("import ", "const ", "require(")


class WorkspaceFixApplier:
    """Applier that edits the worker's workspace.

    Understands four kinds of fix description:

    - "npm install <package>": runs npm in the workspace
    - one containing an ``import X from '...'`` statement: adds it to the
      main file after the leading imports
    - "Add <name>() method ...": adds the method to the first class in the
      main file
    - "... 'type': 'module' ... package.json": sets ``"type": "module"``

    Anything else, or a fix that is already in place, returns an
    unsuccessful FixResult.

    The main file is ``context.metadata["main_file"]`` when set, else the
    first of MAIN_FILE_CANDIDATES found in the workspace, else the first
    ``.js`` file outside node_modules.

    Args:
        npm_command: Command prefix used for installs.
        command_timeout: Seconds before an install is killed.
    """

    def __init__(
        self,
        npm_command: Sequence[str] = ("npm",),
        command_timeout: float = 120.0,
    ) -> None:
        self.npm_command = tuple(npm_command)
        self.command_timeout = command_timeout

    async def apply(self, fix: CandidateFix, context: WorkspaceContext) -> FixResult:
        workspace = context.workspace
        if workspace is None or not workspace.is_dir():
            return FixResult(success=False, message="no workspace")

        description = fix.description
        if match := _NPM_INSTALL.search(description):
            return await self._npm_install(workspace, match.group(1))
        if match := _IMPORT_STATEMENT.search(description):
            return self._add_import(self._main_file(workspace, context), match.group(0))
        if match := _ADD_METHOD.search(description):
            return self._add_method(self._main_file(workspace, context), match.group(1))
        if _MODULE_TYPE.search(description.lower()):
            return self._set_module_type(workspace / "package.json")
        return FixResult(success=False, message=f"no workspace action for: {description}")

    async def _npm_install(self, workspace: Path, package: str) -> FixResult:
        cmd = [*self.npm_command, "install", package]
        _logger.debug("fix.command", args=cmd, cwd=str(workspace))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=workspace,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return FixResult(success=False, message=f"cannot run {cmd[0]}: {e}")
        try:
            _, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.command_timeout
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return FixResult(
                success=False,
                message=f"npm install {package} timed out after {self.command_timeout}s",
            )
        exit_code = proc.returncode or 0
        if exit_code != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            _logger.warning(
                "fix.command_failed", args=cmd, exit_code=exit_code, stderr=stderr[:500]
            )
            return FixResult(
                success=False, message=f"npm install {package} exited with {exit_code}"
            )
        return FixResult(success=True, message=f"installed {package}")

    @staticmethod
    def _main_file(workspace: Path, context: WorkspaceContext) -> Path | None:
        configured = context.metadata.get("main_file")
        if configured:
            path = Path(configured)
            return path if path.is_absolute() else workspace / path
        for name in MAIN_FILE_CANDIDATES:
            if (workspace / name).is_file():
                return workspace / name
        for path in sorted(workspace.rglob("*.js")):
            if "node_modules" not in path.relative_to(workspace).parts:
                return path
        return None

    @staticmethod
    def _add_import(main_file: Path | None, statement: str) -> FixResult:
        if main_file is None or not main_file.is_file():
            return FixResult(success=False, message="no main file to import into")
        content = main_file.read_text()
        if statement.rstrip(";") in content:
            return FixResult(success=False, message=f"already present: {statement}")
        lines = content.split("\n")
        insert_at = 0
        for i, line in enumerate(lines):
            if line.startswith(_LEADING_IMPORT):
                insert_at = i + 1
            elif line.strip() or insert_at:
                break
        lines.insert(insert_at, statement)
        main_file.write_text("\n".join(lines))
        return FixResult(success=True, message=f"added {statement} to {main_file.name}")

    @staticmethod
    def _add_method(main_file: Path | None, name: str) -> FixResult:
        if main_file is None or not main_file.is_file():
            return FixResult(success=False, message="no main file to add the method to")
        content = main_file.read_text()
        opening = _CLASS_OPENING.search(content)
        if opening is None:
            return FixResult(success=False, message=f"no class in {main_file.name}")
        if re.search(rf"^\s*{re.escape(name)}\s*\([^)]*\)\s*\{{", content, re.MULTILINE):
            return FixResult(success=False, message=f"{name}() already defined")
        body = METHOD_TEMPLATES.get(name, f"  {name}() {{\n  }}")
        end = opening.end()
        main_file.write_text(content[:end] + "\n" + body + "\n" + content[end:])
        return FixResult(success=True, message=f"added {name}() to {main_file.name}")

    @staticmethod
    def _set_module_type(package_json: Path) -> FixResult:
        if not package_json.is_file():
            return FixResult(success=False, message="no package.json")
        try:
            data = json.loads(package_json.read_text())
        except json.JSONDecodeError as e:
            return FixResult(success=False, message=f"package.json is not valid JSON: {e}")
        if not isinstance(data, dict):
            return FixResult(success=False, message="package.json is not an object")
        if data.get("type") == "module":
            return FixResult(success=False, message="package.json already has type module")
        data["type"] = "module"
        package_json.write_text(json.dumps(data, indent=2) + "\n")
        return FixResult(success=True, message="set type module in package.json")


__all__ = [
    "GENERIC_FIX_RULES",
    "MAIN_FILE_CANDIDATES",
    "METHOD_TEMPLATES",
    "CandidateFix",
    "FixApplier",
    "FixResult",
    "FixRule",
    "FixSource",
    "PassiveFixApplier",
    "WorkspaceFixApplier",
    "generic_fix_for",
    "select_fixes",
]
