# decoder.py
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from eth_abi import decode as abi_decode
from web3 import Web3

from digest import EventKind, SubKind
from providers import is_invalid_range, is_transient_fault

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))
ERC20_PAYMENT_TOPIC = Web3.to_hex(Web3.keccak(text="ERC20Payment(address,address,address,uint256)"))
ZERO_ADDRESS = "0x" + "0" * 40


@dataclass
class ChainFact:
    """A decoded mint or sale observed in one log."""
    kind: EventKind
    chain: str
    contract: str
    tx_hash: str
    block_number: Optional[int]
    log_index: Optional[int]
    from_addr: str
    to_addr: str
    token_id: Optional[str] = None
    sub_kind: Optional[SubKind] = None
    payment_token: Optional[str] = None
    amount_raw: Optional[int] = None

    @property
    def seen_key(self) -> tuple:
        return (self.contract, self.tx_hash, self.token_id or "", self.kind.value)


def _hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).strip().lower()
    if not text:
        return None
    return text if text.startswith("0x") else "0x" + text


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:]


def _get(log: Any, key: str):
    if isinstance(log, dict):
        return log.get(key)
    return getattr(log, key, None)


class EventDecoder:
    """
    Turns raw eth_getLogs entries for one contract into ChainFacts.
    Logs are untrusted: anything that does not match a known shape is skipped.
    """

    def __init__(self, chain: str):
        self.chain = chain

    def decode(self, logs: Iterable[Any], contract: str) -> List[ChainFact]:
        contract = contract.lower()
        parsed = []
        for log in logs:
            try:
                entry = self._normalize(log)
            except (TypeError, ValueError, AttributeError) as e:
                logger.debug(f"[{self.chain}] skipping malformed log: {e}")
                continue
            if entry is None:
                continue
            if entry["address"] and entry["address"] != contract:
                continue
            parsed.append(entry)

        # token ids moved per transaction, used to tie a payment to an NFT
        transfers_by_tx: Dict[str, str] = {}
        for entry in parsed:
            if entry["topics"][0] == TRANSFER_TOPIC and len(entry["topics"]) == 4:
                transfers_by_tx.setdefault(entry["tx_hash"], str(int(entry["topics"][3], 16)))

        facts = []
        for entry in parsed:
            try:
                fact = self._decode_entry(entry, contract, transfers_by_tx)
            except Exception as e:
                logger.debug(f"[{self.chain}] failed to decode log in tx {entry['tx_hash']}: {e}")
                continue
            if fact is not None:
                facts.append(fact)
        return facts

    def _normalize(self, log: Any) -> Optional[dict]:
        topics = [_hex(t) for t in (_get(log, "topics") or [])]
        tx_hash = _hex(_get(log, "transactionHash"))
        if not topics or not tx_hash or any(t is None or len(t) != 66 for t in topics):
            return None
        block_number = _get(log, "blockNumber")
        log_index = _get(log, "logIndex")
        return {
            "address": (_hex(_get(log, "address")) or ""),
            "topics": topics,
            "data": _hex(_get(log, "data")) or "0x",
            "tx_hash": tx_hash,
            "block_number": int(block_number, 16) if isinstance(block_number, str) else block_number,
            "log_index": int(log_index, 16) if isinstance(log_index, str) else log_index,
        }

    def _decode_entry(self, entry: dict, contract: str, transfers_by_tx: Dict[str, str]) -> Optional[ChainFact]:
        topics = entry["topics"]
        signature = topics[0]

        if signature == TRANSFER_TOPIC:
            # 3-topic Transfer is ERC-20; only ERC-721 mints are interesting here
            if len(topics) != 4:
                return None
            from_addr = _topic_address(topics[1])
            if from_addr != ZERO_ADDRESS:
                return None
            return ChainFact(
                kind=EventKind.MINT,
                chain=self.chain,
                contract=contract,
                tx_hash=entry["tx_hash"],
                block_number=entry["block_number"],
                log_index=entry["log_index"],
                from_addr=from_addr,
                to_addr=_topic_address(topics[2]),
                token_id=str(int(topics[3], 16)),
            )

        if signature == ERC20_PAYMENT_TOPIC:
            if len(topics) != 3:
                return None
            token, amount = abi_decode(["address", "uint256"], bytes.fromhex(entry["data"][2:]))
            token_id = transfers_by_tx.get(entry["tx_hash"])
            return ChainFact(
                kind=EventKind.SALE,
                chain=self.chain,
                contract=contract,
                tx_hash=entry["tx_hash"],
                block_number=entry["block_number"],
                log_index=entry["log_index"],
                from_addr=_topic_address(topics[1]),
                to_addr=_topic_address(topics[2]),
                token_id=token_id,
                sub_kind=SubKind.NFT_SALE if token_id else SubKind.SWAP,
                payment_token=str(token).lower(),
                amount_raw=int(amount),
            )

        return None

    def decode_token_transfers(self, logs: Iterable[Any], token: str, routers: Iterable[str]) -> List[ChainFact]:
        """
        ERC-20 Transfers of `token` that touch a DEX router: out of a router
        is a buy, into a router is a sell. Mints, burns and plain wallet
        transfers are skipped.
        """
        token = token.lower()
        routers = {r.lower() for r in routers}
        facts = []
        for log in logs:
            try:
                entry = self._normalize(log)
                if entry is None or (entry["address"] and entry["address"] != token):
                    continue
                topics = entry["topics"]
                if topics[0] != TRANSFER_TOPIC or len(topics) != 3:
                    continue
                from_addr, to_addr = _topic_address(topics[1]), _topic_address(topics[2])
                if ZERO_ADDRESS in (from_addr, to_addr):
                    continue
                if from_addr in routers:
                    sub_kind = SubKind.TOKEN_BUY
                elif to_addr in routers:
                    sub_kind = SubKind.TOKEN_SELL
                else:
                    continue
                (amount,) = abi_decode(["uint256"], bytes.fromhex(entry["data"][2:]))
            except Exception as e:
                logger.debug(f"[{self.chain}] skipping token log: {e}")
                continue
            facts.append(ChainFact(
                kind=EventKind.SALE,
                chain=self.chain,
                contract=token,
                tx_hash=entry["tx_hash"],
                block_number=entry["block_number"],
                log_index=entry["log_index"],
                from_addr=from_addr,
                to_addr=to_addr,
                sub_kind=sub_kind,
                payment_token=token,
                amount_raw=int(amount),
            ))
        return facts


def get_logs_safe(
    get_logs: Callable[[dict], Iterable[Any]],
    log_filter: dict,
    on_fault: Optional[Callable[[], Any]] = None,
) -> List[Any]:
    """
    eth_getLogs that never raises. An invalid-range rejection is retried once
    for the last block of the range only; any other failure yields [].
    Transient faults call `on_fault` (normally the pool's rotate).
    """
    try:
        return list(get_logs(log_filter))
    except Exception as e:
        if not is_invalid_range(e):
            logger.warning(f"getLogs failed for {log_filter.get('address')}: {e}")
            if on_fault is not None and is_transient_fault(e):
                on_fault()
            return []
        logger.info(f"getLogs rejected range {log_filter.get('fromBlock')}-{log_filter.get('toBlock')}, retrying last block only")

    single = dict(log_filter, fromBlock=log_filter.get("toBlock"))
    try:
        return list(get_logs(single))
    except Exception as e:
        logger.warning(f"getLogs single-block retry failed for {log_filter.get('address')}: {e}")
        if on_fault is not None and is_transient_fault(e):
            on_fault()
        return []
