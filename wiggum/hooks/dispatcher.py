"""
Hook dispatch for ticket transitions.

Hooks are executable files named after the hook (e.g. ``on-claim``). A
project's .wiggum/hooks/ directory takes precedence over the built-in
defaults shipped with wiggum. A hook that exists in neither place is a no-op.

Contract with hook scripts:
- argv[1] is the ticket id
- context arrives in WIGGUM_* environment variables (see build_env)
- exit status 0 approves; anything else vetoes (pre) or is logged (post)
"""

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from wiggum.hooks.background import BackgroundTasks
from wiggum.lib.errors import HookVetoed

logger = logging.getLogger(__name__)

DEFAULT_HOOKS_DIR = Path(__file__).parent.parent / "defaults" / "hooks"


@dataclass
class HookContext:
    """What a hook is told about the transition that triggered it."""
    ticket_id: str
    ticket_path: Path | None = None
    ticket_content: str = ""
    prev_state: str = ""
    new_state: str = ""
    agent_id: str | None = None
    session: str = ""
    project_root: Path | None = None


@dataclass
class HookResult:
    name: str
    path: Path
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class HookDispatcher:
    """Resolves and runs transition hooks."""

    def __init__(self, hooks_dir: Path | None, default_dir: Path | None = DEFAULT_HOOKS_DIR,
                 timeout: int | None = 300, log_path: Path | None = None,
                 tasks: BackgroundTasks | None = None):
        """
        Args:
            hooks_dir: Project hook directory (checked first)
            default_dir: Built-in hook directory (checked second)
            timeout: Seconds a pre-hook may run; None for no limit
            log_path: File that receives post-hook output and failures
            tasks: Runner for post-hooks; one is created if not given
        """
        self.hooks_dir = hooks_dir
        self.default_dir = default_dir
        self.timeout = timeout
        self.log_path = log_path
        self.tasks = tasks or BackgroundTasks()
        self._log_lock = threading.Lock()

    def resolve(self, name: str) -> Path | None:
        """Find the executable for a hook name, or None."""
        if not name or "/" in name or name.startswith("."):
            logger.warning(f"[HOOK] Ignoring invalid hook name: {name!r}")
            return None
        for directory in (self.hooks_dir, self.default_dir):
            if directory is None:
                continue
            candidate = directory / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        return None

    def build_env(self, ctx: HookContext) -> dict[str, str]:
        """Caller's environment plus the WIGGUM_* context bindings."""
        env = os.environ.copy()
        env.update({
            "WIGGUM_TICKET_ID": ctx.ticket_id,
            "WIGGUM_TICKET_PATH": str(ctx.ticket_path) if ctx.ticket_path else "",
            "WIGGUM_TICKET_CONTENT": ctx.ticket_content,
            "WIGGUM_PREV_STATE": ctx.prev_state,
            "WIGGUM_NEW_STATE": ctx.new_state,
            "WIGGUM_AGENT_ID": ctx.agent_id or "",
            "WIGGUM_SESSION": ctx.session,
            "WIGGUM_HOOKS_DIR": str(self.hooks_dir) if self.hooks_dir else "",
            "WIGGUM_PROJECT_ROOT": str(ctx.project_root) if ctx.project_root else "",
        })
        return env

    def run_hook(self, name: str, ctx: HookContext, timeout: int | None = None) -> HookResult | None:
        """Run one hook synchronously.

        Returns:
            HookResult, or None if no such hook is installed
        """
        path = self.resolve(name)
        if path is None:
            logger.debug(f"[HOOK] No hook found: {name}")
            return None

        logger.debug(f"[HOOK] Running {path} {ctx.ticket_id}")
        try:
            proc = subprocess.run(
                [str(path), ctx.ticket_id],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self.build_env(ctx),
            )
        except subprocess.TimeoutExpired as e:
            return HookResult(
                name=name,
                path=path,
                returncode=-1,
                stdout=_text(e.stdout),
                stderr=f"Hook timed out after {timeout}s",
                timed_out=True,
            )
        except OSError as e:
            return HookResult(name=name, path=path, returncode=126, stdout="", stderr=str(e))

        return HookResult(name=name, path=path, returncode=proc.returncode,
                          stdout=proc.stdout, stderr=proc.stderr)

    def run_pre(self, names: list[str], ctx: HookContext) -> list[HookResult]:
        """Run pre-transition hooks in order; the first failure vetoes.

        Raises:
            HookVetoed: if a hook exits non-zero or times out
        """
        results = []
        for name in names:
            result = self.run_hook(name, ctx, timeout=self.timeout)
            if result is None:
                continue
            results.append(result)
            if not result.success:
                logger.warning(
                    f"[HOOK] Pre-hook {name} vetoed {ctx.ticket_id} "
                    f"{ctx.prev_state} -> {ctx.new_state}: {result.stderr.strip() or result.returncode}"
                )
                raise HookVetoed(name, result)
            logger.info(f"[HOOK] Pre-hook {name} approved {ctx.ticket_id}")
        return results

    def schedule_post(self, names: list[str], ctx: HookContext):
        """Queue post-transition hooks to run in order, in the background.

        Returns:
            The task's Future, or None if there is nothing to run
        """
        if not names:
            return None
        return self.tasks.submit(f"post:{ctx.ticket_id}", self._run_post, list(names), ctx)

    def _run_post(self, names: list[str], ctx: HookContext) -> list[HookResult]:
        results = []
        for name in names:
            result = self.run_hook(name, ctx)
            if result is None:
                continue
            results.append(result)
            self._log_result(result, ctx)
            if result.success:
                logger.info(f"[HOOK] Post-hook {name} completed for {ctx.ticket_id}")
            else:
                logger.warning(f"[HOOK] Post-hook {name} failed for {ctx.ticket_id} (exit {result.returncode})")
                self.tasks.record_failure(name, result.stderr.strip() or f"exit {result.returncode}")
        return results

    def _log_result(self, result: HookResult, ctx: HookContext) -> None:
        if self.log_path is None:
            return
        status = "ok" if result.success else f"FAILED (exit {result.returncode})"
        lines = [
            f"[{datetime.now().isoformat(timespec='seconds')}] {result.name} {ctx.ticket_id} "
            f"{ctx.prev_state} -> {ctx.new_state}: {status}"
        ]
        for stream in (result.stdout, result.stderr):
            lines.extend(f"  {line}" for line in stream.splitlines())
        with self._log_lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a") as f:
                f.write("\n".join(lines) + "\n")

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for scheduled post-hooks to finish."""
        return self.tasks.wait(timeout)

    def list_hooks(self) -> dict[str, list[tuple[str, bool]]]:
        """Hook files per location as (name, is_executable)."""
        listing = {}
        for label, directory in (("project", self.hooks_dir), ("default", self.default_dir)):
            entries = []
            if directory is not None and directory.is_dir():
                for path in sorted(directory.iterdir()):
                    if path.is_file() and not path.name.startswith("."):
                        entries.append((path.name, os.access(path, os.X_OK)))
            listing[label] = entries
        return listing


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
