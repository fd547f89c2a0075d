"""Sandboxed computer: shell, file IO and code execution rooted at one
working directory.

Sandboxing here is pattern matching on the command text plus a path rule
for writes. It catches obvious accidents, it does not contain a hostile
program.
"""

import logging
import os
import re
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from conductor.config import SANDBOX_MODES, get_settings
from conductor.errors import SandboxViolation, ToolError, ToolTimeout
from conductor.ids import now_iso
from conductor.tools.registry import Tool, ToolLayer

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
DENIED_EXIT_CODE = 126
NOT_FOUND_EXIT_CODE = 127
RESULT_MARKER = "__conductor_result__"

BASH_DENY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "recursive delete of /",
        re.compile(
            r"\brm\s+(?=[^;&|]*(-\w*[rR]\w*|--recursive)\b)(-{1,2}[\w-]+\s+)*/(\*|\s|$)"
        ),
    ),
    ("raw device write", re.compile(r"\bdd\s+if=|>\s*/dev/(sd|nvme|hd)[a-z0-9]*")),
    ("filesystem format", re.compile(r"\bmkfs(\.\w+)?\b")),
    ("fork bomb", re.compile(r":\(\)\s*\{")),
    (
        "download piped to shell",
        re.compile(r"\b(curl|wget)\b[^|;]*\|\s*(sudo(\s+-{1,2}[\w-]+)*\s+)?(ba|z|da)?sh\b"),
    ),
)
PYTHON_DENY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("shell escape: os.system", re.compile(r"\bos\.(system|popen|exec\w*|spawn\w*)\s*\(")),
    ("shell escape: subprocess", re.compile(r"\bsubprocess\b")),
    ("recursive delete", re.compile(r"\bshutil\.rmtree\s*\(")),
    ("file removal", re.compile(r"\bos\.(remove|unlink|rmdir)\s*\(")),
    (
        "environment mutation",
        re.compile(r"\bos\.(putenv|unsetenv)\s*\(|\bos\.environ\s*\[.*\]\s*="),
    ),
)
R_DENY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("shell escape: system", re.compile(r"\bsystem2?\s*\(")),
    ("recursive delete", re.compile(r"\bunlink\s*\([^)]*recursive\s*=\s*(TRUE|T)\b")),
    ("file removal", re.compile(r"\bfile\.remove\s*\(")),
    ("environment mutation", re.compile(r"\bSys\.setenv\s*\(")),
)

_PYTHON_DRIVER = f"""
import ast, sys
source = sys.stdin.read()
tree = ast.parse(source, mode="exec")
tail = None
if tree.body and isinstance(tree.body[-1], ast.Expr):
    tail = tree.body.pop().value
scope = {{"__name__": "__main__"}}
exec(compile(tree, "<computer>", "exec"), scope)
if tail is not None:
    value = eval(compile(ast.Expression(tail), "<computer>", "eval"), scope)
    if value is not None:
        sys.stdout.flush()
        sys.stdout.write("\\n{RESULT_MARKER}\\n" + repr(value) + "\\n")
"""


def _is_subpath(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def _truncate_text(value: str, max_bytes: int) -> tuple[str, bool]:
    encoded = value.encode("utf-8", errors="ignore")
    if len(encoded) <= max_bytes:
        return value, False
    clipped = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return clipped, True


def _to_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return value


def _sanitize_env() -> dict[str, str]:
    settings = get_settings()
    allow = {item.strip() for item in settings.computer_env_allowlist.split(",") if item.strip()}
    return {key: os.environ[key] for key in allow if key in os.environ}


def _first_violation(
    text: str, patterns: tuple[tuple[str, re.Pattern[str]], ...]
) -> str | None:
    for rule, pattern in patterns:
        if pattern.search(text):
            return rule
    return None


class Computer:
    def __init__(
        self, working_dir: str | Path | None = None, sandbox_mode: str | None = None
    ) -> None:
        settings = get_settings()
        self.working_dir = Path(working_dir or Path.cwd()).expanduser().resolve()
        self.working_dir.mkdir(parents=True, exist_ok=True)
        self._sandbox_mode = "permissive"
        self.sandbox_mode = sandbox_mode or settings.computer_sandbox_mode
        self.execution_log: list[dict[str, Any]] = []

    @property
    def sandbox_mode(self) -> str:
        return self._sandbox_mode

    @sandbox_mode.setter
    def sandbox_mode(self, mode: str) -> None:
        normalized = str(mode).strip().lower()
        if normalized not in SANDBOX_MODES:
            raise ValueError(f"sandbox mode must be one of: {', '.join(SANDBOX_MODES)}")
        self._sandbox_mode = normalized

    def _log(self, operation: str, **details: Any) -> None:
        self.execution_log.append(
            {"timestamp": now_iso(), "operation": operation, "details": details}
        )

    def get_log(self) -> list[dict[str, Any]]:
        return list(self.execution_log)

    def clear_log(self) -> None:
        self.execution_log.clear()

    def _bounded_timeout(self, timeout_ms: int | None) -> float:
        settings = get_settings()
        requested = settings.computer_timeout_ms if timeout_ms is None else int(timeout_ms)
        return max(1, min(requested, settings.computer_timeout_max_ms)) / 1000

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.working_dir / candidate
        return candidate.resolve()

    def _run_process(
        self,
        argv: list[str],
        *,
        timeout_s: float,
        input_text: str | None = None,
        capture_output: bool = True,
    ) -> tuple[int, str, str, bool]:
        stream = subprocess.PIPE if capture_output else None
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(self.working_dir),
                env=_sanitize_env(),
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=stream,
                stderr=stream,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            return NOT_FOUND_EXIT_CODE, "", f"failed to start {argv[0]}: {exc}", False

        try:
            stdout, stderr = proc.communicate(input=input_text, timeout=timeout_s)
            return int(proc.returncode), _to_text(stdout), _to_text(stderr), False
        except subprocess.TimeoutExpired:
            # kill the whole group so grandchildren do not outlive the call
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            stdout, stderr = proc.communicate()
            full_stderr = _to_text(stderr)
            if "timed out" not in full_stderr:
                full_stderr = f"{full_stderr}\ncommand timed out after {timeout_s:g}s".strip()
            return TIMEOUT_EXIT_CODE, _to_text(stdout), full_stderr, True

    def bash(
        self, command: str, timeout_ms: int | None = None, capture_output: bool = True
    ) -> dict[str, Any]:
        timeout_s = self._bounded_timeout(timeout_ms)
        self._log("bash", command=command, timeout_s=timeout_s)

        if self._sandbox_mode != "none":
            rule = _first_violation(command, BASH_DENY_PATTERNS)
            if rule is not None:
                logger.warning("bash command denied", extra={"rule": rule})
                return {
                    "stdout": "",
                    "stderr": f"command denied by sandbox policy: {rule}",
                    "exit_code": DENIED_EXIT_CODE,
                    "error": True,
                    "timed_out": False,
                    "rule": rule,
                }

        exit_code, full_stdout, full_stderr, timed_out = self._run_process(
            ["/bin/bash", "-c", command], timeout_s=timeout_s, capture_output=capture_output
        )
        limit = get_settings().computer_max_output_bytes
        stdout, out_truncated = _truncate_text(full_stdout, limit)
        stderr, err_truncated = _truncate_text(full_stderr, limit)
        return {
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": exit_code,
            "error": exit_code != 0,
            "timed_out": timed_out,
            "stdout_truncated": out_truncated,
            "stderr_truncated": err_truncated,
        }

    def read_file(self, path: str, encoding: str = "utf-8") -> dict[str, Any]:
        self._log("read_file", path=path)
        target = self._resolve(path)
        message = ""
        content: str | None = None
        if not target.exists():
            message = f"File not found: {path}"
        elif not target.is_file():
            message = f"Not a file: {path}"
        else:
            try:
                content = target.read_text(encoding=encoding)
            except (OSError, UnicodeDecodeError) as exc:
                message = f"Error reading {path}: {exc}"
        return {
            "content": content,
            "error": content is None,
            "message": message,
            "path": str(target),
        }

    def write_file(self, path: str, content: str, encoding: str = "utf-8") -> dict[str, Any]:
        self._log("write_file", path=path, chars=len(content))
        target = self._resolve(path)
        if self._sandbox_mode == "strict" and not _is_subpath(target, self.working_dir):
            rule = "write outside working directory"
            return {
                "error": True,
                "message": f"Sandbox violation (strict): {rule}: {path}",
                "path": str(target),
                "rule": rule,
            }
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding=encoding)
        except OSError as exc:
            return {"error": True, "message": f"Error writing {path}: {exc}", "path": str(target)}
        return {
            "error": False,
            "message": f"Wrote {len(content)} characters to {path}",
            "path": str(target),
        }

    def execute_code(
        self,
        code: str,
        language: str = "python",
        timeout_ms: int | None = None,
        capture_output: bool = True,
    ) -> dict[str, Any]:
        language = language.strip().lower()
        if language not in ("python", "r"):
            return {
                "result": None,
                "output": "",
                "error": True,
                "message": f"Unsupported language: {language}",
                "timed_out": False,
            }
        timeout_s = self._bounded_timeout(timeout_ms)
        self._log("execute_code", language=language, chars=len(code), timeout_s=timeout_s)

        if self._sandbox_mode == "strict":
            patterns = PYTHON_DENY_PATTERNS if language == "python" else R_DENY_PATTERNS
            rule = _first_violation(code, patterns)
            if rule is not None:
                logger.warning("code execution denied", extra={"rule": rule, "language": language})
                return {
                    "result": None,
                    "output": "",
                    "error": True,
                    "message": f"Sandbox violation (strict): {rule}",
                    "timed_out": False,
                    "rule": rule,
                }

        settings = get_settings()
        if language == "python":
            argv = [settings.computer_python or sys.executable, "-c", _PYTHON_DRIVER]
            exit_code, stdout, stderr, timed_out = self._run_process(
                argv, timeout_s=timeout_s, input_text=code, capture_output=capture_output
            )
            output, marker, result = stdout.rpartition(f"\n{RESULT_MARKER}\n")
            if not marker:
                output, result = stdout, ""
        else:
            argv = [settings.computer_rscript, "-e", code]
            exit_code, stdout, stderr, timed_out = self._run_process(
                argv, timeout_s=timeout_s, capture_output=capture_output
            )
            output = stdout
            lines = [line for line in stdout.splitlines() if line.strip()]
            result = lines[-1] if lines else ""

        limit = settings.computer_max_output_bytes
        output, _ = _truncate_text(output, limit)
        if exit_code != 0:
            message = stderr.strip() or f"process exited with status {exit_code}"
            return {
                "result": None,
                "output": output,
                "error": True,
                "message": _truncate_text(message, limit)[0],
                "timed_out": timed_out,
                "exit_code": exit_code,
            }
        return {
            "result": result.strip() or None,
            "output": output,
            "error": False,
            "message": stderr.strip(),
            "timed_out": False,
            "exit_code": 0,
        }

    def execute_r_code(
        self, code: str, timeout_ms: int | None = None, capture_output: bool = True
    ) -> dict[str, Any]:
        return self.execute_code(
            code, language="r", timeout_ms=timeout_ms, capture_output=capture_output
        )


def _raise_for(outcome: dict[str, Any], operation: str) -> None:
    if outcome.get("rule"):
        message = str(outcome.get("message") or outcome.get("stderr"))
        raise SandboxViolation(message, rule=str(outcome["rule"]))
    if outcome.get("timed_out"):
        detail = outcome.get("stderr") or outcome.get("message")
        raise ToolTimeout(f"{operation} timed out: {detail}")


class BashArgs(BaseModel):
    command: str = Field(description="Shell command, run with bash in the working directory.")
    timeout_ms: int | None = Field(default=None, description="Timeout in milliseconds.")


class ReadFileArgs(BaseModel):
    path: str = Field(description="File path, relative to the working directory.")


class WriteFileArgs(BaseModel):
    path: str = Field(description="File path, relative to the working directory.")
    content: str = Field(description="Full text content to write.")


class ExecuteCodeArgs(BaseModel):
    code: str = Field(description="Source code. The value of a final expression is returned.")
    language: str = Field(default="python", description="python or r")
    timeout_ms: int | None = Field(default=None, description="Timeout in milliseconds.")


class ExecuteRCodeArgs(BaseModel):
    code: str = Field(description="R source code.")
    timeout_ms: int | None = Field(default=None, description="Timeout in milliseconds.")


def create_computer_tools(computer: Computer) -> list[Tool]:
    """Expose the computer's primitives as computer-layer tools."""

    def bash(command: str, timeout_ms: int | None = None) -> dict[str, Any]:
        outcome = computer.bash(command, timeout_ms=timeout_ms)
        _raise_for(outcome, "bash")
        return {key: outcome[key] for key in ("stdout", "stderr", "exit_code")}

    def read_file(path: str) -> str:
        outcome = computer.read_file(path)
        if outcome["error"]:
            raise ToolError(outcome["message"])
        return str(outcome["content"])

    def write_file(path: str, content: str) -> str:
        outcome = computer.write_file(path, content)
        _raise_for(outcome, "write_file")
        if outcome["error"]:
            raise ToolError(outcome["message"])
        return str(outcome["message"])

    def _code_result(outcome: dict[str, Any], operation: str) -> dict[str, Any]:
        _raise_for(outcome, operation)
        if outcome["error"]:
            raise ToolError(outcome["message"])
        return {"result": outcome["result"], "output": outcome["output"]}

    def execute_code(
        code: str, language: str = "python", timeout_ms: int | None = None
    ) -> dict[str, Any]:
        return _code_result(
            computer.execute_code(code, language=language, timeout_ms=timeout_ms), "execute_code"
        )

    def execute_r_code(code: str, timeout_ms: int | None = None) -> dict[str, Any]:
        outcome = computer.execute_r_code(code, timeout_ms=timeout_ms)
        return _code_result(outcome, "execute_r_code")

    where = f"in {computer.working_dir}"
    layer = ToolLayer.COMPUTER
    return [
        Tool("bash", f"Run a bash command {where}.", bash, BashArgs, layer),
        Tool("read_file", f"Read a text file {where}.", read_file, ReadFileArgs, layer),
        Tool(
            "write_file",
            f"Write a text file {where}, creating parent directories.",
            write_file,
            WriteFileArgs,
            layer,
        ),
        Tool(
            "execute_code",
            f"Run Python or R code in a separate process {where}.",
            execute_code,
            ExecuteCodeArgs,
            layer,
        ),
        Tool(
            "execute_r_code",
            f"Run R code in a separate process {where}.",
            execute_r_code,
            ExecuteRCodeArgs,
            layer,
        ),
    ]
