import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import List

from loguru import logger

from vapview.exceptions import EngineLoadError, EvaluationEngineError


class SubprocessEngine:
    """Engine handle that runs the policy evaluator binary once per evaluation."""

    def __init__(self, binary: Path, timeout: float, version: str = ""):
        self.binary = binary
        self.timeout = timeout
        self.version = version

    async def evaluate(self, policy: str, resource: str, params: str) -> str:
        """Evaluate a policy against a resource, returning the engine's JSON output."""
        with tempfile.TemporaryDirectory(prefix="vapview-") as workdir:
            policy_file = self._write(workdir, "policy.yaml", policy)
            resource_file = self._write(workdir, "resource.yaml", resource)
            params_file = self._write(workdir, "params.yaml", params)

            cmd = [
                str(self.binary),
                "--policy", policy_file,
                "--resource", resource_file,
                "--params", params_file,
            ]
            stdout, stderr, returncode = await _run(cmd, self.timeout)

        if returncode != 0:
            logger.error(f"Policy evaluation failed: {stderr}")
            raise EvaluationEngineError(stderr.strip() or f"Evaluator exited with code {returncode}")

        try:
            output = json.loads(stdout)
        except json.JSONDecodeError:
            return stdout

        if isinstance(output, dict) and output.get("error"):
            raise EvaluationEngineError(str(output["error"]))
        return stdout

    @staticmethod
    def _write(workdir: str, name: str, content: str) -> str:
        path = os.path.join(workdir, name)
        with open(path, "w") as f:
            f.write(content)
        return path


async def _run(cmd: List[str], timeout: float) -> tuple[str, str, int]:
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise EvaluationEngineError(f"Evaluator binary not found: {cmd[0]}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        logger.error(f"Evaluator timed out after {timeout}s")
        raise EvaluationEngineError(f"Evaluation timed out after {timeout}s") from e
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        logger.debug(f"Evaluation cancelled, stopped evaluator pid {process.pid}")
        raise

    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        process.returncode,
    )


async def load_subprocess_engine(binary: Path, timeout: float) -> SubprocessEngine:
    """Check the evaluator binary is present and runnable, and return a handle to it."""
    if not binary.exists() or not os.access(binary, os.X_OK):
        raise EngineLoadError(f"Evaluator binary not found or not executable: {binary}")

    try:
        stdout, stderr, returncode = await _run([str(binary), "--version"], timeout)
    except EvaluationEngineError as e:
        raise EngineLoadError(f"Unable to start evaluator: {e}") from e

    if returncode != 0:
        raise EngineLoadError(f"Evaluator failed to start: {stderr.strip()}")

    version = stdout.strip()
    logger.info(f"Loaded policy evaluator {binary} ({version or 'unknown version'})")
    return SubprocessEngine(binary, timeout, version=version)
