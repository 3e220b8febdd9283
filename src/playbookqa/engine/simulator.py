"""PlaybookQA Simulator Controller -- iOS Simulator control via ``xcrun simctl``.

Implements the DeviceController protocol for the command line host: launch
and terminate apps, tap and type through AppleScript, capture screenshots,
read the unified log and scan DiagnosticReports for crash logs.

All dependencies are standard macOS CLI tools (xcrun, osascript).  Every
public method returns a DeviceResult; subprocess failures never raise into
the engine.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import subprocess
import time
from pathlib import Path
from typing import Any

from playbookqa.engine.protocols import DeviceResult

logger = logging.getLogger("playbookqa.engine.simulator")

DIAGNOSTIC_REPORTS_DIR = Path.home() / "Library" / "Logs" / "DiagnosticReports"


class SimctlController:
    """DeviceController backed by ``xcrun simctl``.

    Usage::

        device = SimctlController(device_name="iPhone 15 Pro")
        await device.launch_app("com.example.myapp")
        await device.screenshot(Path("/tmp/home.png"))
    """

    def __init__(
        self,
        device_id: str | None = None,
        device_name: str | None = None,
        os_version: str | None = None,
        crash_reports_dir: Path | None = None,
    ) -> None:
        """
        Args:
            device_id: Explicit simulator UDID.  If ``None``, the best device
                matching *device_name* and *os_version* is picked on first use.
            device_name: Preferred device name (e.g. ``"iPhone 15 Pro"``).
            os_version: Preferred iOS version (e.g. ``"17.2"``).
            crash_reports_dir: Where crash logs are written by the host.
        """
        self._device_id = device_id
        self._device_name = device_name or "iPhone 15 Pro"
        self._os_version = os_version
        self._crash_reports_dir = crash_reports_dir or DIAGNOSTIC_REPORTS_DIR

    @property
    def device_id(self) -> str | None:
        return self._device_id

    # -- DeviceController ----------------------------------------------------

    async def launch_app(self, bundle_id: str) -> DeviceResult:
        return await asyncio.to_thread(self._run_device_command, "launch", bundle_id)

    async def terminate_app(self, bundle_id: str) -> DeviceResult:
        return await asyncio.to_thread(self._run_device_command, "terminate", bundle_id)

    async def tap(self, x: float, y: float) -> DeviceResult:
        script = (
            f'tell application "Simulator"\n'
            f"  activate\n"
            f"end tell\n"
            f'tell application "System Events"\n'
            f'  tell process "Simulator"\n'
            f"    click at {{{int(x)}, {int(y)}}}\n"
            f"  end tell\n"
            f"end tell"
        )
        return await asyncio.to_thread(self._osascript, script)

    async def type_text(self, text: str) -> DeviceResult:
        if not text:
            return DeviceResult(success=True)
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        script = (
            f'tell application "Simulator"\n'
            f"  activate\n"
            f"end tell\n"
            f'tell application "System Events"\n'
            f'  keystroke "{escaped}"\n'
            f"end tell"
        )
        return await asyncio.to_thread(self._osascript, script)

    async def screenshot(self, output_path: Path) -> DeviceResult:
        return await asyncio.to_thread(self._screenshot, output_path)

    async def read_logs(self, since: dt.datetime, process: str | None = None) -> DeviceResult:
        return await asyncio.to_thread(self._read_logs, since, process)

    async def crash_reports(self, bundle_id: str, since: dt.datetime) -> DeviceResult:
        return await asyncio.to_thread(self._crash_reports, bundle_id, since)

    # -- simctl --------------------------------------------------------------

    def _simctl(self, *args: str, timeout: int = 120) -> subprocess.CompletedProcess[str]:
        """Run ``xcrun simctl <args>`` and return the result."""
        cmd = ["xcrun", "simctl", *args]
        logger.debug("simctl: %s", " ".join(cmd))
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        if result.returncode != 0:
            logger.warning("simctl %s returned %d: %s", args[0], result.returncode, result.stderr.strip())
        return result

    def _resolve_device(self) -> str | None:
        if self._device_id is None:
            self._device_id = self._find_best_device()
            if self._device_id:
                logger.info("Using simulator device: %s (name=%s)", self._device_id, self._device_name)
        return self._device_id

    def _run_device_command(self, command: str, bundle_id: str) -> DeviceResult:
        udid = self._resolve_device()
        if udid is None:
            return DeviceResult(success=False, error=f"No simulator device found matching '{self._device_name}'")
        try:
            result = self._simctl(command, udid, bundle_id)
        except (OSError, subprocess.SubprocessError) as exc:
            return DeviceResult(success=False, error=f"simctl {command} failed: {exc}")
        if result.returncode != 0:
            return DeviceResult(success=False, error=result.stderr.strip() or f"simctl {command} failed")
        return DeviceResult(success=True, data={"bundle_id": bundle_id, "udid": udid})

    def _osascript(self, script: str) -> DeviceResult:
        try:
            result = subprocess.run(["osascript", "-e", script], capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("osascript failed: %s", exc)
            return DeviceResult(success=False, error=str(exc))
        if result.returncode != 0:
            return DeviceResult(success=False, error=result.stderr.strip() or "osascript failed")
        time.sleep(0.3)
        return DeviceResult(success=True)

    def _screenshot(self, output_path: Path) -> DeviceResult:
        udid = self._resolve_device()
        if udid is None:
            return DeviceResult(success=False, error="No simulator device available")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = self._simctl("io", udid, "screenshot", str(output_path), timeout=15)
        except (OSError, subprocess.SubprocessError) as exc:
            return DeviceResult(success=False, error=f"Screenshot failed: {exc}")
        if result.returncode != 0:
            return DeviceResult(success=False, error=result.stderr.strip() or "simctl screenshot failed")
        logger.debug("Screenshot saved: %s", output_path)
        return DeviceResult(success=True, data={"path": str(output_path)})

    def _read_logs(self, since: dt.datetime, process: str | None) -> DeviceResult:
        udid = self._resolve_device()
        if udid is None:
            return DeviceResult(success=False, error="No simulator device available")
        start = since.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        args = ["spawn", udid, "log", "show", "--style", "json", "--start", start]
        if process:
            args += ["--predicate", f'process == "{process}" OR subsystem == "{process}"']
        try:
            result = self._simctl(*args, timeout=60)
        except (OSError, subprocess.SubprocessError) as exc:
            return DeviceResult(success=False, error=f"log show failed: {exc}")
        if result.returncode != 0:
            return DeviceResult(success=False, error=result.stderr.strip() or "log show failed")
        try:
            raw = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            return DeviceResult(success=False, error=f"Could not parse log output: {exc}")
        entries = [
            {
                "timestamp": item.get("timestamp"),
                "process": Path(item.get("processImagePath") or "").name or None,
                "level": item.get("messageType"),
                "message": item.get("eventMessage", ""),
            }
            for item in raw
            if isinstance(item, dict)
        ]
        return DeviceResult(success=True, data=entries)

    def _crash_reports(self, bundle_id: str, since: dt.datetime) -> DeviceResult:
        """Crash logs for *bundle_id* written after *since*, newest first."""
        reports_dir = self._crash_reports_dir
        if not reports_dir.is_dir():
            return DeviceResult(success=True, data=[])

        cutoff = since.timestamp()
        app_name = bundle_id.rsplit(".", 1)[-1].lower()
        crashes: list[dict[str, Any]] = []
        for path in reports_dir.iterdir():
            if path.suffix not in (".ips", ".crash"):
                continue
            try:
                mtime = path.stat().st_mtime
                if mtime < cutoff:
                    continue
                header = path.read_text(errors="replace").split("\n", 1)[0]
            except OSError as exc:
                logger.debug("Skipping unreadable crash report %s: %s", path, exc)
                continue
            meta = _parse_ips_header(header)
            if meta.get("bundleID") != bundle_id and app_name not in path.name.lower():
                continue
            crashes.append(
                {
                    "path": str(path),
                    "process": meta.get("app_name") or path.name.split("-", 1)[0],
                    "timestamp": meta.get("timestamp")
                    or dt.datetime.fromtimestamp(mtime, tz=dt.timezone.utc).isoformat(),
                    "exception_type": meta.get("exception_type"),
                    "mtime": mtime,
                }
            )
        crashes.sort(key=lambda c: c["mtime"], reverse=True)
        for crash in crashes:
            del crash["mtime"]
        return DeviceResult(success=True, data=crashes)

    # -- Devices -------------------------------------------------------------

    def _list_devices(self) -> dict[str, Any]:
        """List all simulator devices as a dict keyed by runtime."""
        try:
            result = self._simctl("list", "devices", "--json", timeout=30)
            return json.loads(result.stdout).get("devices", {})
        except (OSError, subprocess.SubprocessError, json.JSONDecodeError):
            return {}

    def _find_best_device(self) -> str | None:
        """UDID of the best available device matching name and OS preferences."""
        candidates: list[tuple[str, str, str]] = []  # (udid, name, runtime)
        devices = self._list_devices()

        for runtime, device_list in devices.items():
            for device in device_list:
                if not device.get("isAvailable", False):
                    continue
                name = device.get("name", "")
                if self._device_name.lower() not in name.lower():
                    continue
                if self._os_version and self._os_version not in runtime:
                    continue
                if device.get("state") == "Booted":
                    logger.info("Found booted device: %s (%s)", name, runtime)
                    return device.get("udid")
                candidates.append((device.get("udid", ""), name, runtime))

        if candidates:
            udid, name, runtime = candidates[0]
            logger.info("Selected device: %s (%s)", name, runtime)
            return udid
        return None

    @classmethod
    def list_available_devices(cls) -> list[dict[str, Any]]:
        """List all available simulator devices (udid, name, state, runtime)."""
        flat: list[dict[str, Any]] = []
        for runtime, device_list in cls()._list_devices().items():
            for device in device_list:
                if device.get("isAvailable", False):
                    flat.append({
                        "udid": device.get("udid", ""),
                        "name": device.get("name", ""),
                        "state": device.get("state", ""),
                        "runtime": runtime,
                    })
        return flat


def _parse_ips_header(line: str) -> dict[str, Any]:
    """The first line of an ``.ips`` crash report is a JSON metadata object."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        "bundleID": data.get("bundleID"),
        "app_name": data.get("app_name"),
        "timestamp": data.get("timestamp"),
        "exception_type": data.get("bug_type"),
    }
