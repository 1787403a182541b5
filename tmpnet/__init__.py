"""
Temporary network orchestration package.

Modules:
- state: in-memory representation of networks, nodes, subnets and chains
- flags: flag maps and per-node flag composition
- health: health polling for started nodes
- node: start/stop of a single node via its runtime backend
- runtime: process and kubernetes runtime backends
- subnet: subnet, validator and chain provisioning
- network: bootstrap and lifecycle of a whole network
- persistence: on-disk mirror of network configuration
- api: REST surface for inspecting and controlling a running network
"""

__version__ = "0.3.0"
