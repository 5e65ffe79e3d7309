"""PixelCentral command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from pixelcentral.dfu.catalog import DfuBundleCatalog
from pixelcentral.errors import PixelCentralError
from pixelcentral.models.dfu import BundleSource, DfuState
from pixelcentral.runtime import Runtime, RuntimeSettings, files_provider_for

try:  # pragma: no cover - optional rich rendering
	from rich.console import Console
	from rich.table import Table
except Exception:  # pragma: no cover
	Console = None  # type: ignore
	Table = None  # type: ignore

logger = logging.getLogger(__name__)

# Replaced in tests to run commands against a fake transport.
runtime_factory: Callable[[RuntimeSettings], Runtime] = Runtime


def _settings(args: argparse.Namespace) -> RuntimeSettings:
	settings = RuntimeSettings.from_env()
	if getattr(args, "firmware", None):
		settings.firmware_archive = args.firmware
	if getattr(args, "adapter", None):
		settings.adapter = args.adapter
	if getattr(args, "max_connections", None):
		settings.max_connections = args.max_connections
	if getattr(args, "log", None):
		settings.metrics_log = args.log
	return settings


def _print_table(title: str, columns: List[str], rows: List[Dict[str, Any]]) -> None:
	if Console and Table:
		table = Table(title=title, show_lines=False)
		for column in columns:
			table.add_column(column.upper())
		for entry in rows:
			table.add_row(*(str(entry.get(column, "")) for column in columns))
		Console().print(table)
	else:
		for entry in rows:
			sys.stdout.write("\t".join(str(entry.get(column)) for column in columns) + "\n")


def _dump_json(data: Any) -> None:
	json.dump(data, sys.stdout, indent=2)
	sys.stdout.write("\n")


async def _cmd_scan(args: argparse.Namespace) -> int:
	runtime = runtime_factory(_settings(args))
	await runtime.start()
	try:
		await runtime.scanner.start()
		await asyncio.sleep(args.timeout)
		data = [record.to_dict() for record in runtime.scanner.results()]
	finally:
		await runtime.close()
	if args.json:
		_dump_json(data)
		return 0
	for entry in data:
		entry["device_id"] = entry.get("hex_id")
	_print_table(
		"Pixels Scan Results",
		["device_id", "name", "ble_address", "rssi", "battery_level", "firmware_timestamp"],
		data,
	)
	return 0


async def _cmd_bundles(args: argparse.Namespace) -> int:
	provider = files_provider_for(_settings(args).firmware_archive)
	if provider is None:
		raise ValueError("no firmware location given (use --firmware or PIXELCENTRAL_FIRMWARE_ARCHIVE)")
	catalog = DfuBundleCatalog()
	result = await catalog.load(provider, BundleSource.APP)
	if not result.ok:
		logger.error("%s", result.error)
		return 1
	selected = catalog.selected_bundle()
	data = []
	for bundle in catalog.bundles:
		entry = bundle.to_dict()
		entry["selected"] = bundle == selected
		data.append(entry)
	if args.json:
		_dump_json(data)
		return 0
	_print_table("Firmware Bundles", ["date", "comment", "bootloader", "firmware", "selected"], data)
	return 0


async def _cmd_update(args: argparse.Namespace) -> int:
	device_id = int(args.device, 16)
	runtime = runtime_factory(_settings(args))
	await runtime.start()
	console = Console() if Console else None
	last_percent = [-1]

	def _on_state(state: DfuState) -> None:
		logger.info("DFU state: %s", state.value)

	def _on_progress(percent: float) -> None:
		if int(percent) // 10 != last_percent[0] // 10:
			last_percent[0] = int(percent)
			message = f"{device_id:08X}: {percent:5.1f}%"
			if console is not None:
				console.print(message)
			else:
				sys.stdout.write(message + "\n")

	try:
		updated = await runtime.updater.update_device(
			device_id,
			include_bootloader=args.bootloader,
			force=args.force,
			on_state=_on_state,
			on_progress=_on_progress,
		)
	except PixelCentralError as exc:
		logger.error("Update of %08X failed: %s", device_id, exc)
		return 1
	finally:
		await runtime.close()
	if not updated:
		sys.stdout.write(f"{device_id:08X} is already up to date\n")
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	config = uvicorn.Config("pixelcentral.api:app", host=args.host, port=args.port, log_level="info")
	await uvicorn.Server(config).serve()
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Pixels dice central: scan, connect and update firmware")
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	parser.add_argument("--adapter", help="BLE adapter identifier")
	parser.add_argument("--log", help="Path to metrics CSV")
	sub = parser.add_subparsers(dest="command", required=True)

	scan = sub.add_parser("scan", help="Discover nearby Pixels dice")
	scan.add_argument("--timeout", type=float, default=6.0, help="Scan duration in seconds")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	scan.set_defaults(handler=_cmd_scan)

	bundles = sub.add_parser("bundles", help="List firmware bundles found in a directory or archive")
	bundles.add_argument("--firmware", help="Directory or zip archive of DFU files")
	bundles.add_argument("--json", action="store_true", help="Output JSON")
	bundles.set_defaults(handler=_cmd_bundles)

	update = sub.add_parser("update", help="Update a die with the selected firmware bundle")
	update.add_argument("device", help="Pixel id in hex, as shown by scan")
	update.add_argument("--firmware", help="Directory or zip archive of DFU files")
	update.add_argument("--bootloader", action="store_true", help="Also push the bundle's bootloader")
	update.add_argument("--force", action="store_true", help="Update even if the die is up to date")
	update.add_argument("--max-connections", type=int, help="Maximum simultaneous BLE links")
	update.set_defaults(handler=_cmd_update)

	serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(main())
