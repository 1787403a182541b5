"""On-chain creation of subnets, their validators and their chains."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from tmpnet import defaults
from tmpnet.deadline import Deadline
from tmpnet.errors import ConfigurationError, ValidatorActivationTimeoutError
from tmpnet.keys import PrivateKey
from tmpnet.rpc import PlatformClient, SubnetWallet
from tmpnet.state import Node, Subnet

logger = logging.getLogger(__name__)

WalletFactory = Callable[[PrivateKey], SubnetWallet]


class SubnetProvisioner:
    """
    Drives subnet setup through the API of one running node.

    Args:
        api_uri: URI of the node used as the RPC entry point
        request_timeout_s: Timeout of individual API requests
        polling_interval_s: Interval between validator state queries
        platform: Platform chain client (created for api_uri if None)
        wallet_factory: Creates the wallet used to issue transactions for
            an owning key (a SubnetWallet for api_uri if None)
    """

    def __init__(
        self,
        api_uri: str,
        request_timeout_s: float = 5.0,
        polling_interval_s: float = defaults.DEFAULT_POLLING_INTERVAL_S,
        platform: Optional[PlatformClient] = None,
        wallet_factory: Optional[WalletFactory] = None,
    ) -> None:
        self.api_uri = api_uri
        self.polling_interval_s = polling_interval_s
        self.platform = platform or PlatformClient(api_uri, request_timeout_s)
        self.wallet_factory = wallet_factory or (lambda key: SubnetWallet(api_uri, key, request_timeout_s))

    def _wallet(self, subnet: Subnet) -> SubnetWallet:
        if subnet.owning_key is None:
            raise ConfigurationError(f"subnet {subnet.name!r} has no owning key")
        return self.wallet_factory(subnet.owning_key)

    def create(self, subnet: Subnet) -> None:
        """Issue the subnet creation transaction and record the resulting id."""
        logger.info(f"Creating subnet {subnet.name!r}")
        subnet.subnet_id = self._wallet(subnet).create_subnet()
        logger.info(f"Created subnet {subnet.name!r} with id {subnet.subnet_id}")

    def add_validators(self, subnet: Subnet, nodes: Sequence[Node]) -> None:
        """
        Add nodes as validators of the subnet.

        Each node validates the subnet until the end of its primary network
        validation period.

        Raises:
            ConfigurationError: If a node is not a primary network validator
        """
        wallet = self._wallet(subnet)
        for node in nodes:
            end_time = self.platform.get_validator_end_time(node.node_id)
            if end_time is None:
                raise ConfigurationError(f"node {node.node_id} is not a validator of the primary network")
            wallet.add_subnet_validator(subnet.subnet_id, node.node_id, end_time, defaults.SCHMECKLE)
            logger.info(f"Added node {node.node_id} as a validator of subnet {subnet.name!r}")

    def create_chains(self, subnet: Subnet) -> None:
        wallet = self._wallet(subnet)
        for chain in subnet.chains:
            if chain.chain_id:
                continue
            logger.info(f"Creating chain with vm {chain.vm_id} on subnet {subnet.name!r}")
            chain.chain_id = wallet.create_chain(subnet.subnet_id, chain.vm_id, subnet.name, chain.genesis)
            logger.info(f"Created chain {chain.chain_id} on subnet {subnet.name!r}")

    def wait_for_active_validators(self, deadline: Deadline, subnet: Subnet) -> None:
        """
        Wait until every declared validator of the subnet is active.

        A smaller active set than expected means validation has not yet
        started and is retried.

        Raises:
            ValidatorActivationTimeoutError: If the deadline expires first
        """
        logger.info(f"Waiting for validators of subnet {subnet.name!r} to become active")
        while True:
            validators = self.platform.get_current_validators(subnet.subnet_id)
            active = {v.get("nodeID") for v in validators}
            missing = [node_id for node_id in subnet.validator_ids if node_id not in active]
            if not missing:
                logger.info(f"All validators of subnet {subnet.name!r} are active")
                return
            logger.debug(f"Waiting on {len(missing)} validators of subnet {subnet.name!r}")
            if not deadline.wait(self.polling_interval_s):
                raise ValidatorActivationTimeoutError(subnet.name, missing)
