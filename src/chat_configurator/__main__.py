from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .app import create_app
from .generators import DEFAULT_INCLUDE_FILES, GENERATORS, GenerationError, InvalidConfigurationError, generate_package
from .storage import Storage


def _load_configuration(args: argparse.Namespace) -> dict:
    if args.config:
        payload = json.loads(Path(args.config).read_text(encoding="utf-8"))
        return payload.get("configuration", payload) if isinstance(payload, dict) else payload
    storage = Storage(args.data_dir)
    storage.init()
    if args.profile:
        return storage.profiles.get(args.profile)["configuration"]
    return storage.profiles.get_default(storage.secrets)


def _generate(args: argparse.Namespace) -> int:
    configuration = _load_configuration(args)
    include_files = args.include or list(DEFAULT_INCLUDE_FILES)
    try:
        files = generate_package(configuration, include_files, args.package_name)
    except InvalidConfigurationError as exc:
        for error in exc.errors:
            print(f"error: {error}", file=sys.stderr)
        return 1
    except GenerationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    for filename, content in sorted(files.items()):
        target = output / filename
        target.write_text(content, encoding="utf-8", newline="")
        if filename == "install.sh":
            target.chmod(0o755)
        print(target)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Chat platform deployment configurator")
    parser.add_argument("--data-dir", default="./data")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="run the configurator API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    generate = subparsers.add_parser("generate", help="write a deployment package to disk")
    source = generate.add_mutually_exclusive_group()
    source.add_argument("--profile", help="stored profile id")
    source.add_argument("--config", help="JSON file holding a configuration or exported profile")
    generate.add_argument("--output", default="./package")
    generate.add_argument("--include", action="append", choices=list(GENERATORS))
    generate.add_argument("--package-name", default="librechat")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if args.command == "generate":
        return _generate(args)

    app = create_app(args.data_dir)
    app.run(host=args.host, port=args.port, debug=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
