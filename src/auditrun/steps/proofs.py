"""PROOF_GENERATION stage: structured exploit narratives for findings."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from auditrun.pipeline.models import Finding
from auditrun.steps.contracts import ProofDraft, ProofParams

logger = logging.getLogger(__name__)

REPRODUCTION_STEPS: dict[str, tuple[str, ...]] = {
    "REENTRANCY": (
        "Write an attacker contract whose receive/fallback function re-enters the target",
        "Call the vulnerable function from the attacker contract",
        "Re-enter the vulnerable function before the balance update lands",
        "Observe repeated withdrawals against a single recorded balance",
        "Confirm the amount drained exceeds one legitimate withdrawal",
    ),
    "ACCESS_CONTROL": (
        "List the functions that should be owner- or admin-only",
        "Call the vulnerable function from an unprivileged account",
        "Observe that the call succeeds without an authorization check",
        "Confirm privileged actions (withdraw, upgrade, pause) are open to anyone",
    ),
    "ARBITRARY_SEND": (
        "Find the function that transfers value to a caller-supplied address",
        "Call it with an attacker-controlled recipient",
        "Observe the transfer goes through without recipient validation",
        "Confirm the contract balance drops by the transferred amount",
    ),
    "DELEGATECALL": (
        "Deploy a contract that mirrors the target's storage layout",
        "Pass its address to the function performing the delegatecall",
        "Overwrite critical slots such as owner or balances from the payload",
        "Confirm the target's state variables were rewritten",
    ),
    "UNCHECKED_RETURN_VALUE": (
        "Find external calls (transfer, send, call) whose result is ignored",
        "Arrange for the external call to fail, e.g. a recipient with no receive function",
        "Call the vulnerable function and observe execution continues",
        "Confirm internal accounting no longer matches actual balances",
    ),
    "ORACLE_MANIPULATION": (
        "Identify the price source the contract trusts (DEX pool, feed, custom oracle)",
        "Borrow a large position of the base asset through a flash loan",
        "Swap against the pool to move the spot price",
        "Call the vulnerable function while the manipulated price is live",
        "Extract value from the mispricing (over-borrow, underpay, liquidate)",
        "Unwind the swap and repay the flash loan",
    ),
    "FLASH_LOAN_ATTACK": (
        "Pick a flash loan provider with enough liquidity",
        "Borrow the maximum available amount",
        "Use the borrowed funds to skew protocol state or prices",
        "Run the exploit path inside the same transaction",
        "Repay the loan plus fee and keep the difference",
    ),
    "INTEGER_OVERFLOW": (
        "Find arithmetic that runs unchecked",
        "Compute inputs that push the result past the type's bounds",
        "Call the vulnerable function with those inputs",
        "Observe the value wrap around",
        "Confirm the impact (minted balances, bypassed checks)",
    ),
    "BUSINESS_LOGIC": (
        "Walk the protocol flow and list its invariants",
        "Find an ordering of calls that breaks one of them",
        "Execute the calls in that order",
        "Confirm state becomes inconsistent or value becomes extractable",
    ),
    "DOS_ATTACK": (
        "Find loops over caller-growable arrays or external calls",
        "Grow the collection or register a recipient that always reverts",
        "Call the vulnerable function and measure gas use",
        "Confirm the function can no longer complete",
    ),
    "TIMESTAMP_DEPENDENCE": (
        "Find logic that branches on block.timestamp",
        "Note that block producers can shift the timestamp by several seconds",
        "Replay on a local chain with a controlled timestamp",
        "Confirm the outcome changes with the timestamp",
    ),
    "WEAK_RANDOMNESS": (
        "Identify the randomness source (timestamp, blockhash, etc.)",
        "Predict the value before submitting a transaction",
        "Submit only when the predicted outcome is favorable",
        "Confirm rewards can be won consistently",
    ),
    "TX_ORIGIN": (
        "Find authorization checks based on tx.origin",
        "Deploy an intermediary contract that calls the vulnerable function",
        "Get a privileged user to interact with the intermediary",
        "Confirm the privileged action runs on the victim's behalf",
    ),
    "STORAGE_COLLISION": (
        "Locate the proxy or delegatecall boundary",
        "Map storage slots on both sides",
        "Find two variables that share a slot",
        "Write through the function that touches the shared slot",
        "Confirm the unintended variable changed",
    ),
}

EXPECTED_OUTCOMES: dict[str, str] = {
    "REENTRANCY": (
        "Repeated withdrawals run before the state update, so the attacker can "
        "drain the contract in one transaction"
    ),
    "ACCESS_CONTROL": (
        "An unprivileged account can run privileged functions and take control "
        "of the contract and its funds"
    ),
    "ARBITRARY_SEND": (
        "Funds go to an attacker-chosen address without validation, depleting "
        "the contract"
    ),
    "DELEGATECALL": (
        "A foreign contract rewrites storage including the owner, taking "
        "permanent control"
    ),
    "UNCHECKED_RETURN_VALUE": (
        "A failed external call goes unnoticed and internal accounting diverges "
        "from real balances"
    ),
    "SELFDESTRUCT": (
        "An unauthorized caller can destroy the contract, permanently losing "
        "its funds"
    ),
    "TIMESTAMP_DEPENDENCE": (
        "Block producers can steer contract behavior by adjusting the block "
        "timestamp"
    ),
    "TX_ORIGIN": (
        "An intermediary contract can act with a victim's privileges once the "
        "victim interacts with it"
    ),
    "WEAK_RANDOMNESS": (
        "Outcomes derived from block data are predictable and can be won "
        "consistently"
    ),
    "UNINITIALIZED_STORAGE": (
        "Uninitialized storage can hold attacker-influenced values from an "
        "earlier layout"
    ),
    "UNINITIALIZED_VARIABLE": (
        "Uninitialized storage can hold attacker-influenced values from an "
        "earlier layout"
    ),
    "ORACLE_MANIPULATION": (
        "The price source can be moved with flash-loan capital, enabling "
        "over-borrowing, fee avoidance or unfair liquidations"
    ),
    "FLASH_LOAN_ATTACK": (
        "Borrowed capital lets the attacker skew state, prices or governance "
        "within one atomic transaction"
    ),
    "INTEGER_OVERFLOW": (
        "Wrapped arithmetic lets the attacker mint value or bypass balance checks"
    ),
    "BUSINESS_LOGIC": (
        "Protocol invariants can be broken to extract value or corrupt state"
    ),
    "DOS_ATTACK": (
        "Critical functions become unusable through gas exhaustion or forced "
        "reverts"
    ),
    "STORAGE_COLLISION": (
        "A shared storage slot lets the attacker overwrite variables such as "
        "the owner"
    ),
    "LOCKED_ETHER": "Ether sent to the contract can never be withdrawn",
}


def reproduction_steps(finding: Finding, deployment_address: str | None) -> list[str]:
    if deployment_address:
        first = f"Connect to the deployed contract at {deployment_address}"
    else:
        first = "Deploy the vulnerable contract to a test network"

    specific = REPRODUCTION_STEPS.get(finding.vulnerability_type)
    if specific is None:
        location = f"{finding.file_path}:{finding.line_number or 'unknown'}"
        if finding.function_selector:
            trigger = f"Call {finding.function_selector} with crafted inputs"
        else:
            trigger = "Drive the vulnerable code path with edge-case inputs"
        specific = (
            f"Locate the vulnerable code at {location}",
            f"Review the issue: {finding.description}",
            trigger,
            "Observe the exploit and measure its impact",
        )
    elif finding.vulnerability_type in ("ORACLE_MANIPULATION", "BUSINESS_LOGIC"):
        specific = (*specific, f"Reported issue: {finding.description}")

    return [f"{i}. {step}" for i, step in enumerate((first, *specific), start=1)]


def expected_outcome(finding: Finding) -> str:
    outcome = EXPECTED_OUTCOMES.get(finding.vulnerability_type)
    if outcome is not None:
        return outcome
    return (
        f"{finding.vulnerability_type} can be exploited: {finding.description}. "
        "Impact depends on the attack path and may include loss of funds."
    )


def build_payload(
    proof_id: str,
    scan_id: str,
    finding: Finding,
    deployment_address: str | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": proof_id,
        "findingId": finding.id,
        "vulnerabilityType": finding.vulnerability_type,
        "severity": finding.severity.value,
        "description": finding.description,
        "location": {
            "filePath": finding.file_path,
            "lineNumber": finding.line_number,
            "functionSelector": finding.function_selector,
        },
        "exploitDetails": {
            "reproductionSteps": reproduction_steps(finding, deployment_address),
            "expectedOutcome": expected_outcome(finding),
        },
        "metadata": {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "scanId": scan_id,
            "confidenceScore": finding.confidence_score,
        },
    }
    if deployment_address:
        payload["contractDetails"] = {
            "deploymentAddress": deployment_address,
            "affectedFunction": finding.function_selector,
        }
    return payload


class ProofBuilder:
    """Turns one finding into a proof payload with a placeholder signature."""

    async def generate(self, params: ProofParams) -> ProofDraft:
        proof_id = uuid.uuid4().hex[:16]
        payload = build_payload(
            proof_id, params.scan_id, params.finding, params.deployment_address
        )
        # Placeholder until researcher keys exist
        signature = "0x" + proof_id.encode().hex()
        logger.debug("Built proof %s for finding %s", proof_id, params.finding.id)
        return ProofDraft(payload=payload, researcher_signature=signature)
