"""
Safe execution of generated code.

Code is scanned against a fixed denylist before anything is spawned.
JavaScript is written to a per-run file in the artifacts directory and
removed again on every exit path; bash runs directly as a command string.
"""

import os
import re
import shlex
import tempfile
import uuid
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from synapscript.models import LANGUAGES, RUN_FAILED, RUN_SUCCESS
from synapscript.runner.process import ProcessRunner, ProcessTimeoutError


logger = logging.getLogger("synapscript.materializer")

DEFAULT_ARTIFACTS_DIR = Path(
    os.getenv('SYNAPSCRIPT_ARTIFACTS_DIR', Path(tempfile.gettempdir()) / 'synapscript-artifacts')
)
DEFAULT_CODE_TIMEOUT = float(os.getenv('SYNAPSCRIPT_CODE_TIMEOUT', '30'))
NODE_BIN = os.getenv('SYNAPSCRIPT_NODE_BIN', 'node')

DANGEROUS_PATTERNS = [
    re.compile(r'rm\s+-rf\s+/'),
    re.compile(r':\(\)\s*\{\s*:?\s*\|\s*:\s*&\s*\}\s*;\s*:'),
    re.compile(r'eval\('),
    re.compile(r'Function\('),
    re.compile(r'child_process\.spawn'),
]


class DangerousCodeError(ValueError):
    """Generated code matched the denylist and was not executed."""

    def __init__(self, pattern: str):
        self.pattern = pattern
        super().__init__(f"Generated code contains dangerous pattern: {pattern}")


@dataclass
class CodeResult:
    """Result of running a generated script."""
    status: str
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == RUN_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'error': self.error,
            'exit_code': self.exit_code,
        }


def scan_code(code: str) -> str:
    """Reject code matching any denylisted pattern; return it unchanged otherwise."""
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(code):
            raise DangerousCodeError(pattern.pattern)
    return code


class CodeMaterializer:
    """
    Runs generated JavaScript or bash through a ProcessRunner.

    Usage:
        materializer = CodeMaterializer(ProcessRunner())
        result = materializer.execute("console.log('hi')", 'javascript')
    """

    def __init__(
        self,
        runner: ProcessRunner = None,
        artifacts_dir: Path = None,
        timeout: float = DEFAULT_CODE_TIMEOUT,
        node_bin: str = NODE_BIN
    ):
        self.runner = runner or ProcessRunner()
        self.artifacts_dir = Path(artifacts_dir or DEFAULT_ARTIFACTS_DIR)
        self.timeout = timeout
        self.node_bin = node_bin

    def execute(self, code: str, language: str, on_stdout=None, on_stderr=None) -> CodeResult:
        """
        Scan and run generated code.

        Args:
            code: Source text
            language: 'javascript' or 'bash'
            on_stdout: Optional live stdout line callback
            on_stderr: Optional live stderr line callback

        Returns:
            CodeResult; status is 'failed' on any stderr output, non-zero exit or timeout

        Raises:
            DangerousCodeError: if the code matches the denylist
            ValueError: for an unsupported language
        """
        if language not in LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        scan_code(code)

        if language == 'bash':
            return self._run(code, on_stdout, on_stderr)

        with self._artifact(code, '.js') as path:
            command = f"{shlex.quote(self.node_bin)} {shlex.quote(str(path))}"
            return self._run(command, on_stdout, on_stderr)

    def _run(self, command: str, on_stdout, on_stderr) -> CodeResult:
        try:
            result = self.runner.run(
                command, timeout=self.timeout, on_stdout=on_stdout, on_stderr=on_stderr
            )
        except ProcessTimeoutError as e:
            return CodeResult(status=RUN_FAILED, error=str(e))

        if result.stderr or result.exit_code != 0:
            error = result.stderr.strip() or f"Process exited with code {result.exit_code}"
            return CodeResult(
                status=RUN_FAILED,
                stdout=result.stdout,
                stderr=result.stderr,
                error=error,
                exit_code=result.exit_code
            )

        return CodeResult(
            status=RUN_SUCCESS,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code
        )

    @contextmanager
    def _artifact(self, code: str, suffix: str):
        """
        Write code to a fresh file in the artifacts directory.

        Yields:
            Path of the file, which is removed when the block exits
        """
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        path = self.artifacts_dir / f"{uuid.uuid4().hex}{suffix}"
        try:
            path.write_text(code, encoding='utf-8')
            yield path
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove artifact {path}: {e}")
