"""
Veil Receipt Prover

One proving backend per session, opened and closed explicitly.

CONCURRENCY:
- open / close / prove / verify are serialized by one asyncio.Lock.
- Backend calls block for seconds, so they run in the default executor.
- A proof that exceeds the timeout is abandoned: the backend is marked
  closed and must be reopened. The worker thread is not interrupted.

The reference backend drives the Noir toolchain (nargo + bb) as
subprocesses against a compiled circuit directory.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable

from veil.config import ProverConfig
from veil.errors import (
    ConfigError,
    ProofGenerationFailed,
    ProofVerificationFailed,
    ProverNotInitialized,
    VeilError,
)
from veil.receipts.disclosure import CircuitInputs, PublicInputs

logger = logging.getLogger(__name__)

FIELD_ELEMENT_SIZE = 32


@runtime_checkable
class ProverBackend(Protocol):
    """Blocking proof system: prove circuit inputs, verify against public inputs."""

    def open(self) -> None: ...

    def prove(self, inputs: CircuitInputs) -> bytes: ...

    def verify(self, proof: bytes, public_inputs: PublicInputs) -> bool: ...

    def close(self) -> None: ...


# ==============================================================================
# NOIR CLI BACKEND
# ==============================================================================

def _toml_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "[" + ", ".join(f'"{v}"' for v in value) + "]"
    return f'"{value}"'


def prover_toml(inputs: CircuitInputs) -> str:
    """Prover.toml body for the receipt circuit."""
    return "".join(
        f"{name} = {_toml_value(value)}\n"
        for name, value in inputs.to_prover_dict().items()
    )


def public_inputs_bytes(public: PublicInputs) -> bytes:
    """Public inputs as bb expects them: 32-byte big-endian field elements."""
    return b"".join(
        value.to_bytes(FIELD_ELEMENT_SIZE, "big") for value in public.field_elements()
    )


class NoirCliBackend:
    """
    nargo executes the circuit into a witness, bb proves and verifies.

    open() checks the toolchain and writes the verification key once.
    """

    def __init__(self, config: Optional[ProverConfig] = None):
        self.config = config or ProverConfig()
        self.circuit_dir = Path(self.config.circuit_dir)
        self._workdir: Optional[tempfile.TemporaryDirectory] = None
        self._vk_path: Optional[Path] = None

    @property
    def bytecode_path(self) -> Path:
        return self.circuit_dir / "target" / f"{self.config.circuit_name}.json"

    def _run(self, args: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        logger.debug(f"Running {' '.join(args)}")
        return subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=self.config.timeout_sec,
        )

    def open(self) -> None:
        # Reopening discards whatever an abandoned proof left behind
        self.close()
        errors = []
        for tool in (self.config.nargo_path, self.config.bb_path):
            if shutil.which(tool) is None:
                errors.append(f"{tool} not found on PATH")
        if not (self.circuit_dir / "Nargo.toml").exists():
            errors.append(f"No Nargo.toml in {self.circuit_dir}")
        if errors:
            raise ConfigError(errors)

        if not self.bytecode_path.exists():
            result = self._run([self.config.nargo_path, "compile"], cwd=self.circuit_dir)
            if result.returncode != 0:
                raise ConfigError([f"nargo compile failed: {result.stderr.strip()}"])

        self._workdir = tempfile.TemporaryDirectory(prefix="veil-prover-")
        vk_dir = Path(self._workdir.name) / "vk"
        result = self._run([
            self.config.bb_path, "write_vk",
            "-b", str(self.bytecode_path),
            "-o", str(vk_dir),
        ])
        if result.returncode != 0:
            self.close()
            raise ConfigError([f"bb write_vk failed: {result.stderr.strip()}"])
        self._vk_path = vk_dir / "vk"
        logger.info(f"Noir backend ready for {self.config.circuit_name}")

    def prove(self, inputs: CircuitInputs) -> bytes:
        workdir = self._require_open()
        job = Path(tempfile.mkdtemp(dir=workdir))
        witness_name = job.name

        (self.circuit_dir / "Prover.toml").write_text(prover_toml(inputs))
        result = self._run(
            [self.config.nargo_path, "execute", witness_name],
            cwd=self.circuit_dir,
        )
        if result.returncode != 0:
            raise ProofGenerationFailed("receipt", result.stderr.strip())

        witness = self.circuit_dir / "target" / f"{witness_name}.gz"
        result = self._run([
            self.config.bb_path, "prove",
            "-b", str(self.bytecode_path),
            "-w", str(witness),
            "-o", str(job),
        ])
        witness.unlink(missing_ok=True)
        if result.returncode != 0:
            raise ProofGenerationFailed("receipt", result.stderr.strip())
        return (job / "proof").read_bytes()

    def verify(self, proof: bytes, public_inputs: PublicInputs) -> bool:
        workdir = self._require_open()
        job = Path(tempfile.mkdtemp(dir=workdir))
        (job / "proof").write_bytes(proof)
        (job / "public_inputs").write_bytes(public_inputs_bytes(public_inputs))
        result = self._run([
            self.config.bb_path, "verify",
            "-k", str(self._vk_path),
            "-p", str(job / "proof"),
            "-i", str(job / "public_inputs"),
        ])
        return result.returncode == 0

    def close(self) -> None:
        if self._workdir is not None:
            self._workdir.cleanup()
        self._workdir = None
        self._vk_path = None

    def _require_open(self) -> Path:
        if self._workdir is None:
            raise ProverNotInitialized()
        return Path(self._workdir.name)


# ==============================================================================
# SERIALIZED ACCESS
# ==============================================================================

class ReceiptProver:
    """Lock-guarded, explicitly opened wrapper around a ProverBackend."""

    def __init__(self, backend: ProverBackend, timeout_sec: Optional[float] = None):
        self.backend = backend
        self.timeout_sec = timeout_sec
        self._lock = asyncio.Lock()
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def open(self) -> None:
        async with self._lock:
            if self._ready:
                return
            start = time.monotonic()
            await asyncio.get_running_loop().run_in_executor(None, self.backend.open)
            self._ready = True
            logger.info(f"Prover initialized in {(time.monotonic() - start) * 1000:.0f}ms")

    async def close(self) -> None:
        async with self._lock:
            if not self._ready:
                return
            self._ready = False
            await asyncio.get_running_loop().run_in_executor(None, self.backend.close)
            logger.info("Prover closed")

    async def prove(self, inputs: CircuitInputs) -> bytes:
        """
        Generate a proof.

        Raises:
            ProverNotInitialized: open() was not called
            ProofGenerationFailed: the backend rejected the inputs or timed out
        """
        async with self._lock:
            if not self._ready:
                raise ProverNotInitialized()
            start = time.monotonic()
            try:
                proof = await self._call(self.backend.prove, inputs)
            except asyncio.TimeoutError as e:
                self._abandon("prove")
                raise ProofGenerationFailed("receipt", f"timed out after {self.timeout_sec}s") from e
            except VeilError:
                raise
            except Exception as e:
                raise ProofGenerationFailed("receipt", str(e)) from e
            logger.info(f"Receipt proof generated in {(time.monotonic() - start) * 1000:.0f}ms")
            return proof

    async def verify(self, proof: bytes, public_inputs: PublicInputs) -> bool:
        """
        Verify a proof against public inputs.

        Raises:
            ProverNotInitialized: open() was not called
            ProofVerificationFailed: the backend errored or timed out
        """
        async with self._lock:
            if not self._ready:
                raise ProverNotInitialized()
            try:
                valid = await self._call(self.backend.verify, proof, public_inputs)
            except asyncio.TimeoutError as e:
                self._abandon("verify")
                raise ProofVerificationFailed("receipt", f"timed out after {self.timeout_sec}s") from e
            except VeilError:
                raise
            except Exception as e:
                raise ProofVerificationFailed("receipt", str(e)) from e
            logger.info(f"Receipt verification: {'VALID' if valid else 'INVALID'}")
            return bool(valid)

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, fn, *args),
            timeout=self.timeout_sec,
        )

    def _abandon(self, operation: str) -> None:
        # The worker thread keeps running; its backend state is never reused
        self._ready = False
        logger.warning(f"Prover {operation} abandoned after timeout, reopen before next use")
