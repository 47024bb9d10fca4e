"""
run_c50.py

Command line entrypoint (`distc50`). Uses asyncio.run, centralized constants
and rng.

    distc50 coordinator 9000 --partition 0,1,4:party1 --partition 2,3,4:party2
    distc50 dataparty party1 9001 127.0.0.1 9000 party1.arff
    distc50 partition weather.arff 2 parts/ --class-on-all
    distc50 test weather.arff --parties 3
    distc50 predict weather.arff record.values [--tree tree.json]
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Dict, List, Optional

from . import constants, logger, monitoring, rng
from .builder import BuildConfig
from .data_loader import (load_dataset, load_partition, load_values_file, partition_dataset,
                          save_arff, split_data)
from .errors import C50Error
from .evaluate import evaluate_tree, save_results
from .node.cluster import party_ids, run_cluster
from .node.coordinator import Coordinator
from .node.data_party import DataParty
from .schema import parse_partitioning
from .tree import from_dict, predict, render_tree, to_dict


def _build_configuration(args) -> Dict[str, str]:
    cfg = BuildConfig.defaults()
    if getattr(args, "max_depth", None) is not None:
        cfg.max_depth = args.max_depth
    if getattr(args, "min_instances", None) is not None:
        cfg.min_instances = args.min_instances
    if getattr(args, "min_gain_ratio", None) is not None:
        cfg.min_gain_ratio = args.min_gain_ratio
    cfg.class_index = getattr(args, "class_index", None)
    cfg.allow_two_party = bool(getattr(args, "allow_two_party", False))
    cfg.concurrent_rounds = bool(getattr(args, "concurrent_rounds", False))
    return cfg.to_configuration()


def _add_tree_options(p: argparse.ArgumentParser):
    p.add_argument("--max-depth", type=int, default=None)
    p.add_argument("--min-instances", type=int, default=None)
    p.add_argument("--min-gain-ratio", type=float, default=None)
    p.add_argument("--allow-two-party", action="store_true",
                   help="accept a 2-member secure-sum ring (no privacy)")
    p.add_argument("--concurrent-rounds", action="store_true",
                   help="evaluate the candidate attributes of a node concurrently")


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(prog="distc50", description="Privacy-preserving distributed C5.0 over vertically partitioned data")
    p.add_argument("--config", type=str, default=None, help="JSON file overriding constants.DEFAULTS")
    p.add_argument("--wandb-project", type=str, default=None)
    p.add_argument("--log-level", type=str, default="INFO")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("coordinator", help="run the coordinator and build one tree")
    c.add_argument("port", type=int)
    c.add_argument("--host", type=str, default=None)
    c.add_argument("--partition", action="append", required=True, metavar="IDX,..:PARTY",
                   help="attribute indices held by a party; repeat per party, in ring order")
    c.add_argument("--dataset", type=str, default="dataset")
    c.add_argument("--class-index", type=int, default=None)
    c.add_argument("--output", type=str, default=None, help="write the tree as JSON")
    c.add_argument("--wait-timeout", type=float, default=None)
    _add_tree_options(c)

    d = sub.add_parser("dataparty", help="serve one vertical partition")
    d.add_argument("node_id")
    d.add_argument("port", type=int)
    d.add_argument("coordinator_host")
    d.add_argument("coordinator_port", type=int)
    d.add_argument("dataset_file", nargs="?", default=None)
    d.add_argument("--host", type=str, default=None)

    s = sub.add_parser("partition", help="split a dataset into per-party ARFF files")
    s.add_argument("dataset_file")
    s.add_argument("num_parties", type=int)
    s.add_argument("out_dir")
    s.add_argument("--class-on-all", action="store_true")

    t = sub.add_parser("test", help="train on localhost parties and evaluate")
    t.add_argument("dataset_file")
    t.add_argument("--parties", type=int, default=3)
    t.add_argument("--train-percent", type=float, default=None)
    t.add_argument("--seed", type=int, default=None)
    t.add_argument("--class-on-last", action="store_true", help="only the last party holds the class column")
    t.add_argument("--results", type=str, default=None, help="write metrics as JSON")
    _add_tree_options(t)

    r = sub.add_parser("predict", help="classify a single record")
    r.add_argument("dataset_file")
    r.add_argument("record_file")
    r.add_argument("--tree", type=str, default=None, help="load this tree instead of training")
    r.add_argument("--parties", type=int, default=3)
    _add_tree_options(r)
    return p.parse_args(argv)


# ---- commands ----
async def cmd_coordinator(args) -> int:
    configuration = _build_configuration(args)
    coordinator = Coordinator(args.host, args.port)
    await coordinator.start()
    try:
        expected = [pid for pid, _ in parse_partitioning(args.partition)]
        logger.secure_log("info", "Waiting for parties", parties=expected)
        tree = await coordinator.run(args.dataset, args.partition, configuration, args.wait_timeout)
        print(render_tree(tree))
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                json.dump(to_dict(tree), f, indent=2)
            logger.secure_log("info", "Tree saved", path=args.output)
        await coordinator.shutdown_parties()
    finally:
        await coordinator.stop()
    return 0


async def cmd_dataparty(args) -> int:
    if args.dataset_file is None:
        raise C50Error("dataparty needs the party's dataset file")
    partition = load_partition(args.dataset_file)
    party = DataParty(args.node_id, args.host, args.port, args.coordinator_host, args.coordinator_port, partition)
    await party.start()
    try:
        await party.serve_forever()
    finally:
        await party.stop()
    return 0


def cmd_partition(args) -> int:
    dataset = load_dataset(args.dataset_file)
    ids = party_ids(args.num_parties)
    partitioning, partitions = partition_dataset(dataset, ids, include_class=args.class_on_all)
    os.makedirs(args.out_dir, exist_ok=True)
    for pid, part in partitions.items():
        path = os.path.join(args.out_dir, f"{pid}.arff")
        save_arff(dataset, path, part.global_indices)
        print(f"{pid}: {path}")
    print(" ".join(f"--partition {s}" for s in partitioning))
    return 0


async def cmd_test(args) -> int:
    dataset = load_dataset(args.dataset_file)
    train, test = split_data(dataset, args.train_percent, args.seed)
    logger.secure_log("info", "Split data", train=train.num_instances, test=test.num_instances)
    tree = await run_cluster(train, args.parties, _build_configuration(args), include_class=not args.class_on_last)
    print(render_tree(tree))
    metrics = evaluate_tree(tree, test)
    print(json.dumps({k: v for k, v in metrics.items() if k != "confusion"}, indent=2))
    monitoring.log_evaluation(metrics)
    if args.results:
        save_results(args.results, {"metrics": metrics, "tree": to_dict(tree)})
    return 0


async def cmd_predict(args) -> int:
    dataset = load_dataset(args.dataset_file)
    if args.tree:
        try:
            with open(args.tree, "r", encoding="utf-8") as f:
                tree = from_dict(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise C50Error(f"cannot load tree {args.tree}: {e}") from e
    else:
        tree = await run_cluster(dataset, args.parties, _build_configuration(args))
    features = load_values_file(args.record_file, dataset.attributes)
    label = predict(tree, features)
    print(f"Predicted class: {label}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logger.set_level(args.log_level)
    try:
        if args.config:
            with open(args.config, "r", encoding="utf-8") as f:
                constants.update_from_dict(json.load(f))
        rng.set_seed(constants.DEFAULTS.get("DEFAULT_SEED", 0))
        if args.wandb_project:
            monitoring.init_wandb(args.wandb_project, name=args.command, config=vars(args))

        if args.command == "partition":
            return cmd_partition(args)
        handler = {
            "coordinator": cmd_coordinator,
            "dataparty": cmd_dataparty,
            "test": cmd_test,
            "predict": cmd_predict,
        }[args.command]
        return asyncio.run(handler(args))
    except KeyboardInterrupt:
        print("Interrupted by user.")
        return 0
    except (C50Error, OSError, json.JSONDecodeError) as e:
        logger.secure_log("error", "Command failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        monitoring.finish()


if __name__ == "__main__":
    sys.exit(main())
