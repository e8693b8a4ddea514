from __future__ import annotations

import argparse
import logging
import sys
import time

from procusage.core.config import load_config
from procusage.core.exceptions import ProcUsageError
from procusage.core.utils import iso_utc, platform_summary, safe_json_dumps, setup_logging
from procusage.engine.delta import UsageReading
from procusage.reader import UsageReader


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="procusage")
    p.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    p.add_argument("--backend", choices=["psutil", "typeperf", "pdh"], default=None)
    p.add_argument("--interval", type=float, default=0.25, help="Seconds between reads")
    p.add_argument("--count", type=int, default=20, help="Number of reads")
    p.add_argument("--log-level", type=str, default="INFO")
    p.add_argument("--log-dir", type=str, default=None)
    p.add_argument("--json", action="store_true", help="Print readings as JSON lines")
    return p.parse_args(argv)


def format_reading(reading: UsageReading, *, as_json: bool = False) -> str:
    if as_json:
        return safe_json_dumps(reading)
    return (
        f"{iso_utc(reading.sampled_at)} pcpu={reading.cpu_percent:.2f} "
        f"rss={reading.resident_bytes} vss={reading.virtual_bytes}"
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(args.log_dir, level=args.log_level)
    log = logging.getLogger("procusage")
    log.info("starting", extra={"platform": dict(platform_summary())})

    reader: UsageReader | None = None
    try:
        config = load_config(args.config)
        if args.backend:
            config = config.model_copy(update={"backend": args.backend})
        reader = UsageReader.from_config(config)
        for i in range(max(0, args.count)):
            if i:
                time.sleep(max(0.0, args.interval))
            print(format_reading(reader.read_usage(), as_json=args.json), flush=True)
    except ProcUsageError as exc:
        log.error("sampling failed", extra={"error": str(exc), "error_type": type(exc).__name__})
        return 1
    except KeyboardInterrupt:
        log.warning("interrupted")
    finally:
        if reader is not None:
            reader.close()

    log.info("stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
