"""
Scheduled tasks — register toolkit commands to run on a recurring basis.

Tasks are stored in:
    ~/.m365_admin/schedules.json

The store only records what should run and renders the matching cron line
(Linux/macOS) or `schtasks /Create` command (Windows). `install_task`
optionally hands that entry to the local scheduler.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("m365_admin.automation.scheduler")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CONFIG_DIR = Path.home() / ".m365_admin"
_SCHEDULES_FILE = _CONFIG_DIR / "schedules.json"

FREQUENCIES = ("hourly", "daily", "weekly")
WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
_CRON_WEEKDAY = {"SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6}
TASK_FOLDER = "M365Admin"
CRON_MARKER = "# m365_admin:"


class ScheduleError(Exception):
    """Raised for invalid schedules or unknown task names."""
    pass


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class ScheduledTask:
    """One recurring toolkit command."""
    name: str                          # Unique task name
    command: list[str]                 # Toolkit arguments, e.g. ["inactive-users", "--days", "60"]
    frequency: str = "daily"           # hourly | daily | weekly
    start_time: str = "06:00"          # HH:MM (minute only for hourly)
    weekday: str = "MON"               # Used by weekly tasks
    created_at: str = ""

    def __post_init__(self):
        if not self.name or not self.name.replace("-", "").replace("_", "").isalnum():
            raise ScheduleError(f"Task name must be letters, digits, '-' or '_': {self.name!r}")
        if not self.command:
            raise ScheduleError("A scheduled task needs a toolkit command to run.")
        if self.frequency not in FREQUENCIES:
            raise ScheduleError(f"Frequency must be one of {', '.join(FREQUENCIES)}")
        self.weekday = self.weekday.upper()[:3]
        if self.weekday not in WEEKDAYS:
            raise ScheduleError(f"Weekday must be one of {', '.join(WEEKDAYS)}")
        self.hour, self.minute = parse_time(self.start_time)
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "command": list(self.command),
            "frequency": self.frequency,
            "start_time": self.start_time,
            "weekday": self.weekday,
            "created_at": self.created_at,
        }


def parse_time(value: str) -> tuple[int, int]:
    """'HH:MM' -> (hour, minute)."""
    try:
        hour_text, minute_text = value.split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        raise ScheduleError(f"Start time must be HH:MM, got {value!r}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ScheduleError(f"Start time out of range: {value!r}")
    return hour, minute


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def toolkit_invocation(task: ScheduledTask, python: Optional[str] = None) -> list[str]:
    return [python or sys.executable, "-m", "m365_admin", *task.command]


def render_cron(task: ScheduledTask, python: Optional[str] = None) -> str:
    """crontab line for the task, tagged with its name so it can be found again."""
    if task.frequency == "hourly":
        timing = f"{task.minute} * * * *"
    elif task.frequency == "daily":
        timing = f"{task.minute} {task.hour} * * *"
    else:
        timing = f"{task.minute} {task.hour} * * {_CRON_WEEKDAY[task.weekday]}"
    command = shlex.join(toolkit_invocation(task, python))
    return f"{timing} {command} {CRON_MARKER}{task.name}"


def render_schtasks(task: ScheduledTask, python: Optional[str] = None) -> list[str]:
    """schtasks.exe argument list creating (or replacing) the task."""
    invocation = subprocess.list2cmdline(toolkit_invocation(task, python))
    args = [
        "schtasks", "/Create", "/F",
        "/TN", f"{TASK_FOLDER}\\{task.name}",
        "/TR", invocation,
        "/SC", task.frequency.upper(),
        "/ST", f"{task.hour:02d}:{task.minute:02d}",
    ]
    if task.frequency == "weekly":
        args += ["/D", task.weekday]
    return args


def render(task: ScheduledTask, platform: Optional[str] = None) -> str:
    """Human-readable scheduler entry for the current (or given) platform."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return subprocess.list2cmdline(render_schtasks(task))
    return render_cron(task)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@dataclass
class ScheduleStore:
    """Manages scheduled tasks on disk."""
    tasks: dict[str, ScheduledTask] = field(default_factory=dict)

    @classmethod
    def load(cls) -> "ScheduleStore":
        """Load tasks from disk. Returns an empty store if the file doesn't exist."""
        if not _SCHEDULES_FILE.exists():
            return cls()
        try:
            data = json.loads(_SCHEDULES_FILE.read_text(encoding="utf-8"))
            store = cls()
            for name, tdata in data.get("tasks", {}).items():
                store.tasks[name] = ScheduledTask(name=name, **{
                    k: v for k, v in tdata.items() if k != "name"
                })
            return store
        except (json.JSONDecodeError, TypeError, ScheduleError) as e:
            print(f"  ⚠  Failed to parse schedules.json: {e}")
            return cls()

    def save(self) -> None:
        _SCHEDULES_FILE.parent.mkdir(parents=True, exist_ok=True)
        data = {"tasks": {name: t.to_dict() for name, t in self.tasks.items()}}
        _SCHEDULES_FILE.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def add(self, task: ScheduledTask, replace: bool = False) -> None:
        if task.name in self.tasks and not replace:
            raise ScheduleError(f"Task '{task.name}' already exists (use --replace).")
        self.tasks[task.name] = task
        self.save()
        logger.info(f"Scheduled task '{task.name}' saved")

    def remove(self, name: str) -> ScheduledTask:
        if name not in self.tasks:
            raise ScheduleError(f"No scheduled task named '{name}'.")
        task = self.tasks.pop(name)
        self.save()
        return task

    def list_tasks(self) -> list[ScheduledTask]:
        return sorted(self.tasks.values(), key=lambda t: t.name)


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------

def install_task(
    task: ScheduledTask,
    platform: Optional[str] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    """Register the task with cron or the Windows Task Scheduler."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        proc = runner(render_schtasks(task), capture_output=True, text=True)
        if proc.returncode != 0:
            raise ScheduleError(f"schtasks failed: {proc.stderr.strip() or proc.stdout.strip()}")
        return

    current = runner(["crontab", "-l"], capture_output=True, text=True)
    # crontab -l exits 1 when the user has no crontab yet
    lines = current.stdout.splitlines() if current.returncode == 0 else []
    lines = [ln for ln in lines if not ln.endswith(f"{CRON_MARKER}{task.name}")]
    lines.append(render_cron(task))
    proc = runner(["crontab", "-"], input="\n".join(lines) + "\n", capture_output=True, text=True)
    if proc.returncode != 0:
        raise ScheduleError(f"crontab update failed: {proc.stderr.strip()}")


def uninstall_task(
    task: ScheduledTask,
    platform: Optional[str] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    """Remove the task from cron or the Windows Task Scheduler."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        runner(["schtasks", "/Delete", "/F", "/TN", f"{TASK_FOLDER}\\{task.name}"],
               capture_output=True, text=True)
        return
    current = runner(["crontab", "-l"], capture_output=True, text=True)
    if current.returncode != 0:
        return
    lines = [ln for ln in current.stdout.splitlines()
             if not ln.endswith(f"{CRON_MARKER}{task.name}")]
    runner(["crontab", "-"], input="\n".join(lines) + "\n", capture_output=True, text=True)
