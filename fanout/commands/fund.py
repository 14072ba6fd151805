import argparse
import asyncio
import json
import sys
from typing import Optional

from fanout.clients.chain_client import ChainClient
from fanout.config import WalletRole
from fanout.database import SessionLocal, init_db
from fanout.errors import FanoutError
from fanout.gateway import ResilientGateway
from fanout.ledger import SqlLedgerStore, load_tree
from fanout.orchestrator import TransferOrchestrator


def _build(gateway: ResilientGateway) -> TransferOrchestrator:
    ledger = SqlLedgerStore(SessionLocal)
    return TransferOrchestrator(ChainClient(gateway), ledger)


async def provision(distributor_key: Optional[str], intermediates: int, terminals: int) -> int:
    init_db()
    gateway = ResilientGateway()
    try:
        orchestrator = _build(gateway)
        if distributor_key is None:
            distributor_key = (await orchestrator.provision_wallets(WalletRole.DISTRIBUTOR, 1))[0].public_key
        created = await orchestrator.provision_wallets(WalletRole.INTERMEDIATE, intermediates, parent_key=distributor_key)
        for intermediate in created:
            await orchestrator.provision_wallets(WalletRole.TERMINAL, terminals, parent_key=intermediate.public_key)
    finally:
        await gateway.aclose()
    print(json.dumps({"distributor": distributor_key, "intermediates": [w.public_key for w in created]}))
    return 0


async def fund(distributor_key: str, idempotency_key: Optional[str] = None) -> int:
    init_db()
    gateway = ResilientGateway()
    try:
        orchestrator = _build(gateway)
        distributor, branches = load_tree(orchestrator.ledger, distributor_key)
        result = await orchestrator.fund_tree(distributor, branches, idempotency_key=idempotency_key)
    finally:
        await gateway.aclose()
    print(json.dumps({"successful": result.successful, "failed": result.failed, "errors": result.errors}))
    return 1 if result.failed else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fan SOL out through a distributor wallet tree")
    sub = parser.add_subparsers(dest="command", required=True)

    provision_cmd = sub.add_parser("provision", help="create intermediate and terminal wallets under a distributor")
    provision_cmd.add_argument("--distributor", help="existing distributor key; a new one is created when omitted")
    provision_cmd.add_argument("--intermediates", type=int, default=2)
    provision_cmd.add_argument("--terminals", type=int, default=4)

    fund_cmd = sub.add_parser("fund", help="fund every wallet under a distributor")
    fund_cmd.add_argument("distributor")
    fund_cmd.add_argument("--idempotency-key")

    args = parser.parse_args(argv)
    try:
        if args.command == "provision":
            return asyncio.run(provision(args.distributor, args.intermediates, args.terminals))
        return asyncio.run(fund(args.distributor, args.idempotency_key))
    except FanoutError as exc:
        print(json.dumps({"error": exc.detail, "code": exc.code}), file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
