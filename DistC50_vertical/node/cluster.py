"""
cluster.py

Run a coordinator and N data parties inside one event loop, talking over real
TCP sockets on localhost with OS-assigned ports. Used by the `test` CLI command
and the end-to-end tests.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from .. import constants, logger
from ..data_loader import Dataset, partition_dataset
from ..schema import DataPartition
from ..tree import TreeNode
from .coordinator import Coordinator
from .data_party import DataParty


def party_ids(num_parties: int) -> List[str]:
    return [f"party{i + 1}" for i in range(num_parties)]


async def run_partitions(dataset_name: str, partitioning: Sequence[str], partitions: Dict[str, DataPartition],
                         configuration: Optional[Dict[str, str]] = None,
                         host: Optional[str] = None) -> Tuple[TreeNode, Coordinator]:
    """Build over explicitly given partitions (unbound or bound; the Initiation binds them)."""
    host = host or constants.DEFAULTS.get("DEFAULT_HOST", "127.0.0.1")
    coordinator = Coordinator(host, 0)
    await coordinator.start()
    parties = [DataParty(pid, host, 0, host, coordinator.port, part) for pid, part in partitions.items()]
    try:
        for p in parties:
            await p.start()
        tree = await coordinator.run(dataset_name, partitioning, configuration)
        await coordinator.shutdown_parties()
    finally:
        for p in parties:
            await p.stop()
        await coordinator.stop()
    logger.secure_log("info", "Cluster run finished", parties=len(parties), rounds=coordinator.rounds_completed)
    return tree, coordinator


async def run_cluster(dataset: Dataset, num_parties: int, configuration: Optional[Dict[str, str]] = None,
                      include_class: bool = True) -> TreeNode:
    ids = party_ids(num_parties)
    partitioning, partitions = partition_dataset(dataset, ids, include_class)
    configuration = dict(configuration or {})
    configuration.setdefault("classIndex", str(dataset.class_index))
    tree, _ = await run_partitions(dataset.name, partitioning, partitions, configuration)
    return tree
