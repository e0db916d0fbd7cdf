"""DEPLOY stage: start a local anvil chain and deploy the compiled contract."""

from __future__ import annotations

import asyncio
import json
import logging
import time

from auditrun.steps.contracts import DeployParams, DeployResult
from auditrun.steps.process import run_command

logger = logging.getLogger(__name__)

# First prefunded account anvil derives from its default mnemonic
ANVIL_DEFAULT_KEY = (
    "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
)


class ChainStartError(RuntimeError):
    pass


class AnvilDeployExecutor:
    """Spawns anvil on the leased port and deploys with ``cast send --create``.

    The process is attached to the run's chain scope before anything else
    can fail, so the orchestrator always has something to clean up.
    """

    def __init__(self, ready_timeout: float = 10.0, poll_interval: float = 0.25) -> None:
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval

    async def run(self, params: DeployParams) -> DeployResult:
        if not params.bytecode:
            raise ValueError(f"No bytecode to deploy for {params.contract_name}")

        process = await asyncio.create_subprocess_exec(
            "anvil",
            "--port",
            str(params.port),
            "--host",
            "127.0.0.1",
            "--silent",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        params.scope.attach(process)
        logger.info("Started anvil (pid %d) on port %d", process.pid, params.port)

        await self._wait_ready(process, params.port)

        bytecode = params.bytecode
        if not bytecode.startswith("0x"):
            bytecode = "0x" + bytecode
        result = await run_command(
            [
                "cast",
                "send",
                "--create",
                bytecode,
                "--private-key",
                ANVIL_DEFAULT_KEY,
                "--rpc-url",
                f"http://127.0.0.1:{params.port}",
                "--json",
            ]
        )
        receipt = json.loads(result.stdout)
        address = receipt.get("contractAddress")
        if not address:
            raise ChainStartError(
                f"Deployment of {params.contract_name} returned no contract address"
            )

        logger.info("Deployed %s at %s", params.contract_name, address)
        return DeployResult(
            deployment_address=address,
            port=params.port,
            process=process,
            transaction_hash=receipt.get("transactionHash", ""),
        )

    async def _wait_ready(self, process: asyncio.subprocess.Process, port: int) -> None:
        deadline = time.monotonic() + self._ready_timeout
        while True:
            if process.returncode is not None:
                raise ChainStartError(
                    f"anvil exited with code {process.returncode} before listening "
                    f"on port {port}"
                )
            try:
                _, writer = await asyncio.open_connection("127.0.0.1", port)
            except OSError:
                if time.monotonic() >= deadline:
                    raise ChainStartError(f"anvil not listening on port {port}")
                await asyncio.sleep(self._poll_interval)
                continue
            writer.close()
            await writer.wait_closed()
            return
