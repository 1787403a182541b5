"""Genesis document for a temporary network."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, TYPE_CHECKING

from tmpnet import defaults
from tmpnet.errors import ConfigurationError
from tmpnet.keys import PrivateKey

if TYPE_CHECKING:
    from tmpnet.state import Node

# Network ids reserved for networks whose genesis ships with the node binary
RESERVED_NETWORK_IDS = {1, 5, 12345}

INITIAL_STAKE_DURATION_S = 365 * 24 * 60 * 60
INITIAL_STAKE_DURATION_OFFSET_S = 90 * 60
FUNDED_KEY_AMOUNT = 30 * defaults.MEGA_VOLREX
STAKED_AMOUNT = 20 * defaults.MEGA_VOLREX
# 2% expressed in parts per million
DEFAULT_DELEGATION_FEE = 20_000


@dataclass
class UnlockSchedule:
    amount: int
    locktime: int = 0


@dataclass
class Allocation:
    address: str
    initial_amount: int = 0
    unlock_schedule: List[UnlockSchedule] = field(default_factory=list)


@dataclass
class Staker:
    node_id: str
    reward_address: str
    delegation_fee: int = DEFAULT_DELEGATION_FEE


@dataclass
class Genesis:
    """Unparsed genesis configuration as consumed by the node."""
    network_id: int
    allocations: List[Allocation] = field(default_factory=list)
    start_time: int = 0
    initial_stake_duration: int = INITIAL_STAKE_DURATION_S
    initial_stake_duration_offset: int = INITIAL_STAKE_DURATION_OFFSET_S
    initial_staked_funds: List[str] = field(default_factory=list)
    initial_stakers: List[Staker] = field(default_factory=list)
    c_chain_genesis: str = ""
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "networkID": self.network_id,
            "allocations": [
                {
                    "avaxAddr": a.address,
                    "initialAmount": a.initial_amount,
                    "unlockSchedule": [
                        {"amount": u.amount, "locktime": u.locktime} for u in a.unlock_schedule
                    ],
                }
                for a in self.allocations
            ],
            "startTime": self.start_time,
            "initialStakeDuration": self.initial_stake_duration,
            "initialStakeDurationOffset": self.initial_stake_duration_offset,
            "initialStakedFunds": list(self.initial_staked_funds),
            "initialStakers": [
                {
                    "nodeID": s.node_id,
                    "rewardAddress": s.reward_address,
                    "delegationFee": s.delegation_fee,
                }
                for s in self.initial_stakers
            ],
            "cChainGenesis": self.c_chain_genesis,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Genesis":
        return cls(
            network_id=int(data.get("networkID", 0)),
            allocations=[
                Allocation(
                    address=a["avaxAddr"],
                    initial_amount=int(a.get("initialAmount", 0)),
                    unlock_schedule=[
                        UnlockSchedule(amount=int(u["amount"]), locktime=int(u.get("locktime", 0)))
                        for u in a.get("unlockSchedule") or []
                    ],
                )
                for a in data.get("allocations") or []
            ],
            start_time=int(data.get("startTime", 0)),
            initial_stake_duration=int(data.get("initialStakeDuration", INITIAL_STAKE_DURATION_S)),
            initial_stake_duration_offset=int(
                data.get("initialStakeDurationOffset", INITIAL_STAKE_DURATION_OFFSET_S)
            ),
            initial_staked_funds=list(data.get("initialStakedFunds") or []),
            initial_stakers=[
                Staker(
                    node_id=s["nodeID"],
                    reward_address=s["rewardAddress"],
                    delegation_fee=int(s.get("delegationFee", DEFAULT_DELEGATION_FEE)),
                )
                for s in data.get("initialStakers") or []
            ],
            c_chain_genesis=data.get("cChainGenesis", ""),
            message=data.get("message", ""),
        )


def new_test_genesis(network_id: int, nodes: Sequence["Node"], keys_to_fund: Sequence[PrivateKey]) -> Genesis:
    """
    Create a genesis that funds the given keys and stakes every node.

    Args:
        network_id: Id of the network; must not be a reserved id
        nodes: Nodes to include as initial stakers (must have node ids)
        keys_to_fund: Keys to allocate funds to; the first key also
            receives staking rewards

    Raises:
        ConfigurationError: On a reserved network id or empty nodes/keys
    """
    if network_id in RESERVED_NETWORK_IDS:
        raise ConfigurationError(f"network id {network_id} is reserved and can't be used for a test genesis")
    if not nodes:
        raise ConfigurationError("no nodes provided for genesis")
    if not keys_to_fund:
        raise ConfigurationError("no keys provided for genesis")

    stake_address = keys_to_fund[0].address
    now = int(time.time())

    genesis = Genesis(
        network_id=network_id,
        allocations=[
            Allocation(
                address=stake_address,
                unlock_schedule=[UnlockSchedule(amount=STAKED_AMOUNT, locktime=now + INITIAL_STAKE_DURATION_S)],
            )
        ],
        start_time=now,
        initial_staked_funds=[stake_address],
        c_chain_genesis=json.dumps({
            "config": {"chainId": 43112},
            "alloc": {key.address: {"balance": hex(FUNDED_KEY_AMOUNT)} for key in keys_to_fund},
            "gasLimit": "0x5f5e100",
            "difficulty": "0x0",
        }),
        message="hello tmpnet!",
    )

    for key in keys_to_fund:
        genesis.allocations.append(Allocation(address=key.address, initial_amount=FUNDED_KEY_AMOUNT))

    for node in nodes:
        if not node.node_id:
            raise ConfigurationError("all nodes must have a node id before generating a genesis")
        genesis.initial_stakers.append(Staker(node_id=node.node_id, reward_address=stake_address))

    return genesis
