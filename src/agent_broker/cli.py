import argparse
import logging
import os
import sys
from pathlib import Path

from agent_broker.app_container import build_broker
from agent_broker.config import DEFAULT_CONFIG_DIR, CONFIG_DIR_KEY, describe_config, load_config
from agent_broker.plugins.manifest import (
    build_declared_capabilities,
    load_manifest,
    parse_plugin_manifest,
    validate_manifest,
)


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def validate_manifest_file(path: Path) -> int:
    try:
        manifest = load_manifest(path)
    except (OSError, ValueError) as exc:
        print(f"Invalid manifest JSON: {exc}", file=sys.stderr)
        return 1

    errors = validate_manifest(manifest)
    if errors:
        print("Manifest validation failed:")
        for err in errors:
            print(f"- {err}")
        return 2
    parsed = parse_plugin_manifest(manifest)
    capabilities = build_declared_capabilities(parsed.permissions if parsed else None)
    print("Manifest validation passed.")
    if capabilities:
        print("Declared capabilities requiring disclosure:")
        for cap in capabilities:
            print(f"- {cap.permission}" + (f" ({cap.scope})" if cap.scope else ""))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Agent capability and secret broker")
    parser.add_argument(
        "--config-dir",
        default=os.environ.get(CONFIG_DIR_KEY) or str(DEFAULT_CONFIG_DIR),
        help="Directory holding .env and state.db (default: ~/.config/agent-broker)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--serve", action="store_true", help="Run the admin HTTP API")
    parser.add_argument("--host", default="127.0.0.1", help="Admin API bind host")
    parser.add_argument("--port", type=int, default=8765, help="Admin API bind port")
    parser.add_argument("--validate-manifest", metavar="PATH", help="Validate a plugin manifest JSON file and exit")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))

    args = parser.parse_args()
    config_dir = Path(args.config_dir).expanduser().resolve()

    _configure_logging(args.log_level)

    if args.validate_manifest:
        raise SystemExit(validate_manifest_file(Path(args.validate_manifest)))

    config = load_config(config_dir)

    if args.print_config:
        for line in describe_config(config):
            print(line)
        return

    if args.serve:
        from agent_broker.control_center.app import create_app
        import uvicorn

        container = build_broker(config)
        app = create_app(container)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    parser.print_help()


if __name__ == "__main__":
    main()
