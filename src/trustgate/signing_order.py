"""Signing order gate.

A signer at order N waits for every participating signer with a strictly
smaller order. Equal orders sign in parallel. Evaluated from a fresh
signer list on every use.
"""

from typing import Iterable

from .models import PendingSigner, Signer, SignerStatus, SigningOrderBlock


def evaluate_signing_order(signers: Iterable[Signer], signer: Signer) -> SigningOrderBlock:
    """Which predecessors still block ``signer``.

    Args:
        signers: All recipients of the document.
        signer: The signer who wants to sign.

    Returns:
        A :class:`SigningOrderBlock`; ``pending`` lists the blockers in
        signing order.
    """
    if signer.status == SignerStatus.SIGNED:
        return SigningOrderBlock()

    pending = [
        PendingSigner(
            signer_id=s.signer_id,
            name=s.name,
            email=s.email,
            signing_order=s.signing_order,
            status=s.status,
        )
        for s in signers
        if s.signer_id != signer.signer_id
        and s.participates
        and s.signing_order < signer.signing_order
        and s.status != SignerStatus.SIGNED
    ]
    pending.sort(key=lambda p: p.signing_order)
    return SigningOrderBlock(blocked=bool(pending), pending=pending)
