from registrar.core.chain_client import ChainClient, normalize_endpoint
from registrar.core.engine import EngineSettings, create_engines
from registrar.core.errors import InvalidKeyMaterial
from registrar.core.keys import load_keypair, resolve_hotkey
from registrar.core.models import (
    AbortReason,
    Aborted,
    DEFAULT_CHAIN_ENDPOINT,
    DEFAULT_MAX_COST,
    RegistrationRequest,
    tao_to_rao,
)
from registrar.ui.reporter import ConsoleReporter, render_request_summary, render_results
from registrar.utils.config import Config, DEFAULT_CONFIG_PATH
from registrar.utils.logger import configure_logging, set_console_level, setup_logger
from rich.console import Console
from rich.prompt import Prompt
import argparse
import asyncio
import logging
import signal
import sys

console = Console()
logger = setup_logger('registrar.main', 'logs/registrar.log')

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Register hotkeys on a subnet once the recycle cost fits the budget")
    parser.add_argument("--coldkey", help="Coldkey mnemonic, derivation URI or 0x seed (prompted when omitted)")
    parser.add_argument("--hotkey", action="append", required=True,
                        help="Hotkey SS58 address or key material; repeat to register several hotkeys")
    parser.add_argument("--netuid", type=int, required=True, help="Subnet to register on")
    parser.add_argument("--max-cost", type=int, default=None, help=f"Max recycle cost in rao (default {DEFAULT_MAX_COST})")
    parser.add_argument("--chain-endpoint", default=None, help=f"Chain endpoint (default {DEFAULT_CHAIN_ENDPOINT})")
    parser.add_argument("--seed", type=int, default=None, help="Seed for retry jitter")
    parser.add_argument("--tip-tao", type=float, default=None, help="Priority tip in TAO")
    parser.add_argument("--config", default=None, help=f"YAML config file (default {DEFAULT_CONFIG_PATH} when present)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Show cost snapshots (-v) and state changes (-vv)")
    return parser.parse_args(argv)

def load_config(path) -> Config:
    if path:
        return Config(path)
    return Config(DEFAULT_CONFIG_PATH, required=False)

def apply_overrides(args, config: Config):
    overrides = {
        'registration.max_cost': args.max_cost,
        'registration.tip_tao': args.tip_tao,
        'chain.endpoint': args.chain_endpoint,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

def build_requests(args, config, coldkey):
    max_cost = int(config.get('registration.max_cost', DEFAULT_MAX_COST))
    endpoint = normalize_endpoint(config.get('chain.endpoint', DEFAULT_CHAIN_ENDPOINT))
    tip_tao = float(config.get('registration.tip_tao', 0.0))

    requests = []
    rejected = {}
    for index, identity in enumerate(args.hotkey, 1):
        try:
            hotkey_ss58 = resolve_hotkey(identity)
        except InvalidKeyMaterial as e:
            rejected[f"<hotkey #{index}>"] = Aborted(reason=AbortReason.INVALID_KEY_MATERIAL, message=str(e))
            continue
        requests.append(RegistrationRequest(
            coldkey=coldkey,
            hotkey_ss58=hotkey_ss58,
            netuid=args.netuid,
            max_cost=max_cost,
            chain_endpoint=endpoint,
            seed=args.seed,
            tip=tao_to_rao(tip_tao),
        ))
    return requests, rejected

async def run_engines(engines):
    loop = asyncio.get_running_loop()

    def cancel_all(sig, frame):
        console.print("\n[yellow]Cancelling registrations...[/yellow]")
        for engine in engines:
            loop.call_soon_threadsafe(engine.cancel)

    previous = signal.signal(signal.SIGINT, cancel_all)
    try:
        return await asyncio.gather(*(engine.run() for engine in engines))
    finally:
        signal.signal(signal.SIGINT, previous)

def main(argv=None) -> int:
    args = parse_args(argv)
    config = load_config(args.config)
    apply_overrides(args, config)

    configure_logging(config.get('logging.file'), config.get('logging.level'))
    set_console_level(logging.INFO if args.verbose >= 2 else logging.WARNING)

    material = args.coldkey or Prompt.ask("Enter coldkey mnemonic or URI", password=True)
    try:
        coldkey = load_keypair(material)
    except InvalidKeyMaterial as e:
        logger.error(f"Invalid coldkey: {e}")
        render_results({"<coldkey>": Aborted(reason=AbortReason.INVALID_KEY_MATERIAL, message=str(e))}, args.netuid)
        return 1

    try:
        requests, results = build_requests(args, config, coldkey)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    if requests:
        first = requests[0]
        render_request_summary([r.hotkey_ss58 for r in requests], first.netuid, first.max_cost, first.chain_endpoint, first.tip)

        chain = ChainClient(
            first.chain_endpoint,
            era_period=int(config.get('chain.era_period', 64)),
            wait_for_finalization=bool(config.get('chain.wait_for_finalization', False)),
        )
        engines = create_engines(
            requests,
            chain,
            settings=EngineSettings.from_config(config),
            listeners=[ConsoleReporter(args.verbose)],
        )
        try:
            outcomes = asyncio.run(run_engines(engines))
        finally:
            chain.close()

        for request, result in zip(requests, outcomes):
            results[request.hotkey_ss58] = result

    render_results(results, args.netuid)

    done = all(r.ok or r.reason == AbortReason.ALREADY_REGISTERED for r in results.values())
    return 0 if done and results else 1

if __name__ == "__main__":
    sys.exit(main())
