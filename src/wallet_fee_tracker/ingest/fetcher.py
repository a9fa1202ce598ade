"""ERC-20 Transfer log fetching and decoding for one chunk and one token."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3

from wallet_fee_tracker.ingest.models import BlockRange, TransferDecodeError, TransferEvent

if TYPE_CHECKING:
    from wallet_fee_tracker.chain.client import ChainClient

logger = logging.getLogger(__name__)

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = "0x" + bytes(AsyncWeb3.keccak(text="Transfer(address,address,uint256)")).hex()


def _to_hex(value: Any) -> str:
    """Normalize HexBytes / bytes / str to a lowercase 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value).removeprefix("0x")
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise TransferDecodeError(f"not hex: {value!r}") from e


def _topic_to_address(topic: Any) -> str:
    raw = _to_bytes(topic)
    if len(raw) != 32:
        raise TransferDecodeError(f"address topic must be 32 bytes, got {len(raw)}")
    return "0x" + raw[-20:].hex()


def decode_transfer_log(log: dict[str, Any], *, token_contract: str) -> TransferEvent:
    """Decode one `Transfer` log entry.

    Raises:
        TransferDecodeError: The entry is not a well-formed ERC-20 Transfer.
    """
    topics = log.get("topics") or []
    if len(topics) < 3:
        raise TransferDecodeError(f"expected 3 topics, got {len(topics)}")
    if _to_hex(topics[0]) != TRANSFER_EVENT_SIGNATURE:
        raise TransferDecodeError("topic0 is not the Transfer signature")

    data = _to_bytes(log.get("data") or b"")
    if len(data) < 32:
        raise TransferDecodeError(f"data must hold a uint256, got {len(data)} bytes")

    tx_hash = log.get("transactionHash")
    if not tx_hash:
        raise TransferDecodeError("missing transactionHash")
    block_number = log.get("blockNumber")
    log_index = log.get("logIndex")
    if block_number is None or log_index is None:
        raise TransferDecodeError("missing blockNumber or logIndex")

    return TransferEvent(
        token_contract=token_contract.lower(),
        from_address=_topic_to_address(topics[1]),
        to_address=_topic_to_address(topics[2]),
        value=int.from_bytes(data[:32], "big"),
        block_number=int(block_number),
        tx_hash=_to_hex(tx_hash),
        log_index=int(log_index),
    )


class TransferFetcher:
    """Fetch the wallet's Transfer events for one token over one chunk.

    Provider errors propagate unchanged; the caller decides whether to
    narrow, retry or give up.
    """

    def __init__(self, chain: ChainClient, *, wallet_address: str) -> None:
        self._chain = chain
        self._wallet = wallet_address.lower()

    async def fetch(self, chunk: BlockRange, token_contract: str) -> list[TransferEvent]:
        logs = await self._chain.get_logs(
            {
                "address": AsyncWeb3.to_checksum_address(token_contract),
                "topics": [TRANSFER_EVENT_SIGNATURE],
                "fromBlock": chunk.start,
                "toBlock": chunk.end,
            }
        )

        transfers: list[TransferEvent] = []
        for log in logs:
            if log.get("removed"):
                continue
            try:
                event = decode_transfer_log(log, token_contract=token_contract)
            except TransferDecodeError as e:
                logger.warning(
                    "Skipping malformed log (token=%s, blocks=%s, tx=%s): %s",
                    token_contract,
                    chunk,
                    log.get("transactionHash"),
                    e,
                )
                continue
            if event.from_address == self._wallet or event.to_address == self._wallet:
                transfers.append(event)

        if transfers:
            logger.debug("Found %d transfers for %s in blocks %s", len(transfers), token_contract, chunk)
        return transfers
