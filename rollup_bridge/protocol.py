"""
Rollup Protocol Definitions

Wire-level knowledge of the parent/child rollup bridge:
- Precompile addresses and message kinds
- Enumerated event-signature table (protocol and application events)
- Log decoding and contract-call encoding via eth_abi
- Raw message states and deposit identifier calculation
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import rlp
from eth_abi import decode, encode
from eth_utils import keccak, to_canonical_address, to_checksum_address

from .errors import AmbiguousMessage, ConfigurationError


# Child-chain precompiles
ARB_SYS_ADDRESS = to_checksum_address("0x0000000000000000000000000000000000000064")
ARB_RETRYABLE_TX_ADDRESS = to_checksum_address("0x000000000000000000000000000000000000006e")
NODE_INTERFACE_ADDRESS = to_checksum_address("0x00000000000000000000000000000000000000c8")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Inbox message kinds
MESSAGE_KIND_SUBMIT_RETRYABLE = 9
MESSAGE_KIND_ETH_DEPOSIT = 12

# Typed transaction prefixes used for child-chain deposit ids
DEPOSIT_TX_TYPE = b'\x64'
SUBMIT_RETRYABLE_TX_TYPE = b'\x69'


class OutgoingMessageState(IntEnum):
    """Protocol state of a child -> parent message"""
    UNCONFIRMED = 0
    CONFIRMED = 1
    EXECUTED = 2


class EthDepositStatus(IntEnum):
    PENDING = 1
    DEPOSITED = 2


class RetryableStatus(IntEnum):
    """Protocol state of a parent -> child retryable ticket"""
    NOT_YET_CREATED = 1
    CREATION_FAILED = 2
    FUNDS_DEPOSITED_ON_CHILD = 3
    REDEEMED = 4
    EXPIRED = 5


# ---------------------------------------------------------------------------
# Byte helpers
# ---------------------------------------------------------------------------

def as_bytes(value: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(value, str):
        value = value[2:] if value.startswith(('0x', '0X')) else value
        return bytes.fromhex(value)
    return bytes(value)


def hash_hex(value: Union[str, bytes]) -> str:
    """Normalize a hash to lowercase 0x-prefixed hex"""
    return '0x' + as_bytes(value).hex()


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


ADDRESS_ALIAS_OFFSET = 0x1111000000000000000000000000000000001111


def apply_l1_to_l2_alias(address: str) -> str:
    """Child-chain alias of a parent-chain contract address"""
    aliased = (int.from_bytes(to_canonical_address(address), 'big') + ADDRESS_ALIAS_OFFSET) % (1 << 160)
    return to_checksum_address(aliased.to_bytes(20, 'big'))


def _strip_number(value: int) -> bytes:
    return value.to_bytes((value.bit_length() + 7) // 8, 'big')


def _address_from_word(value: int) -> str:
    return to_checksum_address(value.to_bytes(32, 'big')[12:])


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSignature:
    """One entry of the event-signature table"""
    name: str
    inputs: Tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> bytes:
        return keccak(text=self.signature)

    @property
    def topic_hex(self) -> str:
        return '0x' + self.topic.hex()

    def matches(self, log: Dict) -> bool:
        topics = log.get('topics') or []
        return bool(topics) and as_bytes(topics[0]) == self.topic

    def decode(self, log: Dict) -> Dict[str, Any]:
        """
        Decode a log emitted with this signature

        Args:
            log: Log dict ({address, topics, data, ...})

        Returns:
            Dict of argument name -> decoded value

        Raises:
            ValueError: If the log does not carry this signature
        """
        if not self.matches(log):
            raise ValueError(f"Log is not a {self.name} event")

        topics = [as_bytes(t) for t in log['topics'][1:]]
        indexed = [i for i in self.inputs if i.indexed]
        plain = [i for i in self.inputs if not i.indexed]

        if len(topics) != len(indexed):
            raise ValueError(f"{self.name}: expected {len(indexed)} indexed topics, got {len(topics)}")

        args: Dict[str, Any] = {}
        for item, topic in zip(indexed, topics):
            args[item.name] = decode([item.type], topic)[0]

        values = decode([i.type for i in plain], as_bytes(log.get('data') or b''))
        for item, value in zip(plain, values):
            args[item.name] = value

        return args


def _event(name: str, *inputs: Tuple) -> EventSignature:
    return EventSignature(name, tuple(EventInput(*i) for i in inputs))


L2_TO_L1_TX = _event(
    "L2ToL1Tx",
    ("caller", "address"),
    ("destination", "address", True),
    ("hash", "uint256", True),
    ("position", "uint256", True),
    ("arbBlockNum", "uint256"),
    ("ethBlockNum", "uint256"),
    ("timestamp", "uint256"),
    ("callvalue", "uint256"),
    ("data", "bytes"),
)

MESSAGE_DELIVERED = _event(
    "MessageDelivered",
    ("messageIndex", "uint256", True),
    ("beforeInboxAcc", "bytes32", True),
    ("inbox", "address"),
    ("kind", "uint8"),
    ("sender", "address"),
    ("messageDataHash", "bytes32"),
    ("baseFeeL1", "uint256"),
    ("timestamp", "uint64"),
)

INBOX_MESSAGE_DELIVERED = _event(
    "InboxMessageDelivered",
    ("messageNum", "uint256", True),
    ("data", "bytes"),
)

REDEEM_SCHEDULED = _event(
    "RedeemScheduled",
    ("ticketId", "bytes32", True),
    ("retryTxHash", "bytes32", True),
    ("sequenceNum", "uint64", True),
    ("donatedGas", "uint64"),
    ("gasDonor", "address"),
    ("maxRefund", "uint256"),
    ("submissionFeeRefund", "uint256"),
)

NODE_CONFIRMED = _event(
    "NodeConfirmed",
    ("nodeNum", "uint64", True),
    ("blockHash", "bytes32"),
    ("sendRoot", "bytes32"),
)

# Application-level event emitted by the child-chain NFT contract on bridgeToL1
NFT_WITHDRAWAL_CREATED = _event(
    "L2ToL1TxCreated",
    ("from", "address", True),
    ("tokenId", "uint256", True),
    ("tokenURI", "string"),
)


class EventTable:
    """
    Enumerated event signatures, unique by name and by topic

    Lookups fail loudly: a log matched by more than one entry, or a name
    registered twice, is an error rather than a silent first match.
    """

    def __init__(self, events: Iterable[EventSignature]):
        self._by_name: Dict[str, EventSignature] = {}
        self._by_topic: Dict[bytes, EventSignature] = {}
        for event in events:
            if event.name in self._by_name:
                raise ConfigurationError(f"Event name {event.name} registered twice")
            if event.topic in self._by_topic:
                raise ConfigurationError(f"Event topic for {event.signature} registered twice")
            self._by_name[event.name] = event
            self._by_topic[event.topic] = event

    def __getitem__(self, name: str) -> EventSignature:
        return self._by_name[name]

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def identify(self, log: Dict) -> Optional[EventSignature]:
        topics = log.get('topics') or []
        if not topics:
            return None
        return self._by_topic.get(as_bytes(topics[0]))

    def find_single(self, logs: Sequence[Dict], name: str) -> Tuple[Dict, Dict[str, Any]]:
        """
        Find and decode the one log carrying the named event

        Raises:
            LookupError: If no log matches
            AmbiguousMessage: If more than one log matches
        """
        event = self._by_name[name]
        matches = [log for log in logs if event.matches(log)]
        if not matches:
            raise LookupError(f"No {name} log found")
        if len(matches) > 1:
            raise AmbiguousMessage(detail=f"{len(matches)} {name} logs in one transaction")
        return matches[0], event.decode(matches[0])


PROTOCOL_EVENTS = EventTable([
    L2_TO_L1_TX,
    MESSAGE_DELIVERED,
    INBOX_MESSAGE_DELIVERED,
    REDEEM_SCHEDULED,
    NODE_CONFIRMED,
])

APPLICATION_EVENTS = EventTable([NFT_WITHDRAWAL_CREATED])


# ---------------------------------------------------------------------------
# Contract calls
# ---------------------------------------------------------------------------

def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def encode_call(signature: str, args: Sequence[Any] = ()) -> bytes:
    """
    Encode calldata for a function signature such as 'isSpent(uint256)'
    """
    types_part = signature[signature.index('(') + 1:-1]
    types = [t for t in types_part.split(',') if t] if types_part else []
    return function_selector(signature) + encode(types, list(args))


def decode_result(types: Sequence[str], data: bytes) -> Tuple:
    return decode(list(types), data)


def topic_for(abi_type: str, value: Any) -> str:
    return '0x' + encode([abi_type], [value]).hex()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class OutgoingMessage:
    """Child -> parent message created by an L2ToL1Tx event"""
    tx_hash: str
    caller: str
    destination: str
    position: int
    arb_block_num: int
    eth_block_num: int
    timestamp: int
    callvalue: int
    data: bytes
    block_number: Optional[int] = None
    log_index: Optional[int] = None

    @classmethod
    def from_log(cls, log: Dict) -> 'OutgoingMessage':
        args = L2_TO_L1_TX.decode(log)
        return cls(
            tx_hash=hash_hex(log['transactionHash']),
            caller=args['caller'],
            destination=args['destination'],
            position=args['position'],
            arb_block_num=args['arbBlockNum'],
            eth_block_num=args['ethBlockNum'],
            timestamp=args['timestamp'],
            callvalue=args['callvalue'],
            data=args['data'],
            block_number=log.get('blockNumber'),
            log_index=log.get('logIndex'),
        )


def outgoing_messages_from_receipt(receipt: Dict) -> List[OutgoingMessage]:
    return [
        OutgoingMessage.from_log(log)
        for log in receipt.get('logs', [])
        if same_address(log.get('address'), ARB_SYS_ADDRESS) and L2_TO_L1_TX.matches(log)
    ]


@dataclass
class RetryableParams:
    """Packed submit-retryable payload of an InboxMessageDelivered event"""
    dest_address: str
    l2_call_value: int
    l1_value: int
    max_submission_fee: int
    excess_fee_refund_address: str
    call_value_refund_address: str
    gas_limit: int
    max_fee_per_gas: int
    data: bytes


def parse_retryable_data(data: bytes) -> RetryableParams:
    words = decode(['uint256'] * 9, data[:9 * 32])
    data_length = words[8]
    return RetryableParams(
        dest_address=_address_from_word(words[0]),
        l2_call_value=words[1],
        l1_value=words[2],
        max_submission_fee=words[3],
        excess_fee_refund_address=_address_from_word(words[4]),
        call_value_refund_address=_address_from_word(words[5]),
        gas_limit=words[6],
        max_fee_per_gas=words[7],
        data=data[len(data) - data_length:] if data_length else b'',
    )


def parse_eth_deposit_data(data: bytes) -> Tuple[str, int]:
    """Packed (address to, uint256 value) payload of an ETH deposit"""
    to_address = to_checksum_address(data[:20])
    value = int.from_bytes(data[20:52], 'big')
    return to_address, value


@dataclass
class DeliveredMessage:
    """Parent -> child message: joined Bridge and Inbox delivery events"""
    tx_hash: str
    message_index: int
    kind: int
    sender: str
    inbox: str
    base_fee_l1: int
    timestamp: int
    data: bytes


def delivered_messages_from_receipt(receipt: Dict) -> List[DeliveredMessage]:
    """
    Join MessageDelivered and InboxMessageDelivered logs by message index
    """
    tx_hash = hash_hex(receipt['transactionHash'])
    inbox_payloads: Dict[int, bytes] = {}
    bridge_events: List[Dict[str, Any]] = []

    for log in receipt.get('logs', []):
        if INBOX_MESSAGE_DELIVERED.matches(log):
            args = INBOX_MESSAGE_DELIVERED.decode(log)
            inbox_payloads[args['messageNum']] = args['data']
        elif MESSAGE_DELIVERED.matches(log):
            bridge_events.append(MESSAGE_DELIVERED.decode(log))

    messages = []
    for args in bridge_events:
        index = args['messageIndex']
        if index not in inbox_payloads:
            continue
        messages.append(DeliveredMessage(
            tx_hash=tx_hash,
            message_index=index,
            kind=args['kind'],
            sender=args['sender'],
            inbox=args['inbox'],
            base_fee_l1=args['baseFeeL1'],
            timestamp=args['timestamp'],
            data=inbox_payloads[index],
        ))
    return messages


def calculate_deposit_tx_id(
    child_chain_id: int,
    message_number: int,
    from_address: str,
    to_address: str,
    value: int,
) -> str:
    """Child-chain transaction hash of an ETH deposit"""
    fields = [
        _strip_number(child_chain_id),
        message_number.to_bytes(32, 'big'),
        to_canonical_address(from_address),
        to_canonical_address(to_address),
        _strip_number(value),
    ]
    return hash_hex(keccak(DEPOSIT_TX_TYPE + rlp.encode(fields)))


def calculate_retryable_id(
    child_chain_id: int,
    message_number: int,
    from_address: str,
    base_fee_l1: int,
    params: RetryableParams,
) -> str:
    """Child-chain transaction hash of a retryable ticket creation"""
    dest = b'' if same_address(params.dest_address, ZERO_ADDRESS) else to_canonical_address(params.dest_address)
    fields = [
        _strip_number(child_chain_id),
        message_number.to_bytes(32, 'big'),
        to_canonical_address(from_address),
        _strip_number(base_fee_l1),
        _strip_number(params.l1_value),
        _strip_number(params.max_fee_per_gas),
        _strip_number(params.gas_limit),
        dest,
        _strip_number(params.l2_call_value),
        to_canonical_address(params.call_value_refund_address),
        _strip_number(params.max_submission_fee),
        to_canonical_address(params.excess_fee_refund_address),
        params.data,
    ]
    return hash_hex(keccak(SUBMIT_RETRYABLE_TX_TYPE + rlp.encode(fields)))
