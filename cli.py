"""
Command line tool - run backtests and manage the price cache
"""
import argparse
import asyncio
import json
import math
import sys

import config
from backtest.engine import BacktestOrchestrator
from backtest.errors import BacktestError
from backtest.scheduler.task_scheduler import TaskScheduler
from backtest.services.cleanup_service import CacheCleanupService
from backtest.services.data_service import HistoricalDataCache, create_cache_store
from config.validator import validate_settings
from strategies.strategies import StrategyRegistry
from utils.logger_utils import get_logger

logger = get_logger("cli")


def _fmt(value: float) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        return "inf" if value > 0 else "-inf"
    return f"{value:.4f}" if isinstance(value, float) else str(value)


def _print_progress(event):
    print(f"  [{event.phase.value:<10}] {event.progress:5.1f}%  {event.message}")


def _build_orchestrator(backend: str = None, quiet: bool = False) -> BacktestOrchestrator:
    cache = HistoricalDataCache(create_cache_store(backend))
    return BacktestOrchestrator(
        cache=cache,
        scheduler=TaskScheduler(),
        progress_callback=None if quiet else _print_progress,
    )


def cmd_run(config_path: str, backend: str = None, output: str = None, quiet: bool = False) -> int:
    """Run a backtest from a JSON configuration file"""
    with open(config_path, encoding='utf-8') as f:
        raw = json.load(f)

    orchestrator = _build_orchestrator(backend, quiet)
    try:
        results = asyncio.run(orchestrator.run(raw))
    except BacktestError as e:
        print(f"\nBacktest failed ({e.phase or 'config'}): {e.message}")
        for key, value in e.details.items():
            print(f"   {key}: {value}")
        return 1

    print("\nResults:")
    for result in results:
        perf = result.performance
        print(f"\n  {result.strategy_id} {result.parameters}")
        print(f"    Trades:        {perf.total_trades}")
        print(f"    Total return:  {_fmt(perf.total_return)}")
        print(f"    Final equity:  {result.final_equity:.2f}")
        print(f"    Sharpe:        {_fmt(perf.sharpe_ratio)}")
        print(f"    Max drawdown:  {_fmt(perf.max_drawdown)}")
        print(f"    Win rate:      {perf.win_rate:.1f}%")
        if result.monte_carlo is not None:
            print(f"    P(loss):       {result.monte_carlo.probability_of_loss:.2%}")
        if result.walk_forward is not None:
            print(f"    WF consistency:{result.walk_forward.aggregate.consistency:8.4f}")
        if result.assessment is not None:
            print(f"    Verdict:       {result.assessment.recommendation.value}")
            for reason in result.assessment.reasons:
                print(f"      - {reason}")

    if output:
        with open(output, 'w', encoding='utf-8') as f:
            json.dump([r.summary() for r in results], f, indent=2, default=str)
        print(f"\nSummary written to {output}")
    return 0


def cmd_cache_sweep(backend: str = None, watch: float = None) -> int:
    """Evict cache entries past the hard TTL, once or every `watch` seconds"""
    cache = HistoricalDataCache(create_cache_store(backend))
    service = CacheCleanupService(cache, interval=watch or config.CACHE_SWEEP_INTERVAL)

    async def sweep():
        removed = await service.run_once()
        return removed, await cache.stats()

    async def watch_forever():
        service.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            stats = await service.stop()
            print(f"Swept {stats['sweeps']} time(s), removed {stats['removed']} entries")

    if watch:
        try:
            asyncio.run(watch_forever())
        except KeyboardInterrupt:
            pass
        return 0

    removed, stats = asyncio.run(sweep())
    print(f"Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")
    print(f"Cache: {stats['entries']} entries, {stats['bars']} bars, {stats['size_bytes']} bytes")
    return 0


def cmd_strategies() -> int:
    for strategy_id in StrategyRegistry().ids():
        print(strategy_id)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Backtesting and robustness analysis")
    subparsers = parser.add_subparsers(dest='command', help='available commands')

    # run
    p_run = subparsers.add_parser('run', help='run a backtest from a JSON config')
    p_run.add_argument('config', help='path to the backtest config (JSON)')
    p_run.add_argument('--cache', choices=['memory', 'sqlite'], help='cache backend')
    p_run.add_argument('--output', help='write a JSON summary here')
    p_run.add_argument('--quiet', action='store_true', help='hide progress events')

    # cache-sweep
    p_sweep = subparsers.add_parser('cache-sweep', help='evict expired cache entries')
    p_sweep.add_argument('--cache', choices=['memory', 'sqlite'], default='sqlite', help='cache backend')
    p_sweep.add_argument('--watch', type=float, metavar='SECONDS', help='keep sweeping at this interval')

    # strategies
    subparsers.add_parser('strategies', help='list registered strategies')

    args = parser.parse_args(argv)

    if not validate_settings(config):
        return 2

    if args.command == 'run':
        return cmd_run(args.config, args.cache, args.output, args.quiet)
    elif args.command == 'cache-sweep':
        return cmd_cache_sweep(args.cache, args.watch)
    elif args.command == 'strategies':
        return cmd_strategies()
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
