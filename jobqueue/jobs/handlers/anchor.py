"""Agreement hash anchoring (``blockchain.anchor``)."""
from jobqueue.errors import CollaboratorRejected
from jobqueue.jobs.handlers.common import require_collaborator, require_payload
from jobqueue.jobs.payloads import BlockchainAnchorPayload
from jobqueue.logging_config import get_logger

logger = get_logger(component="handlers.anchor")


async def handle_blockchain_anchor(ctx: dict, job) -> dict:
    payload = require_payload(job, BlockchainAnchorPayload)
    agreements = require_collaborator(ctx, "agreements")
    chain = require_collaborator(ctx, "chain")

    agreement = await agreements.get_agreement(payload.agreement_id)
    if agreement is None:
        raise CollaboratorRejected(f"Agreement not found: {payload.agreement_id}", code="agreement_not_found")

    # Already anchored by an earlier execution
    for anchor in agreement.get("anchors") or []:
        if anchor.get("immutable_hash") == payload.immutable_hash and anchor.get("chain") == payload.chain:
            logger.info("anchor_already_recorded", job_id=job.id, agreement_id=payload.agreement_id)
            return {"tx_id": anchor.get("tx_id"), "chain": payload.chain, "skipped": True}

    tx_id = await chain.submit_anchor(
        payload.immutable_hash,
        payload.chain,
        idempotency_key=f"anchor-{payload.agreement_id}-{payload.immutable_hash}",
    )
    await agreements.record_anchor(payload.agreement_id, payload.immutable_hash, payload.chain, tx_id)

    logger.info("anchor_submitted", job_id=job.id, agreement_id=payload.agreement_id, tx_id=tx_id)
    return {"tx_id": tx_id, "chain": payload.chain, "skipped": False}
