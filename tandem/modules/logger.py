# tandem/modules/logger.py
import os
import datetime
import threading
import json

from rich.console import Console
from rich.markup import escape


class Logger:
    LEVELS = {
        "debug": 10,
        "info": 20,
        "success": 25,
        "warning": 30,
        "error": 40,
    }

    LOG_STYLES = {
        "DEBUG": "bright_black",
        "INFO": "blue",
        "SUCCESS": "green",
        "WARNING": "yellow",
        "ERROR": "bold red",
    }

    def __init__(self, name="tandem", config=None, console=None, _shared=None):
        self.name = name
        if _shared is not None:
            # children share output settings, lock and console with their parent
            self.__dict__.update({k: v for k, v in _shared.items() if k != "name"})
            return

        get = config.get if config is not None else (lambda s, o, fallback=None: fallback)
        getboolean = config.getboolean if config is not None else (lambda s, o, fallback=False: fallback)
        getint = config.getint if config is not None else (lambda s, o, fallback=0: fallback)

        self.log_file = os.path.expanduser(get("logging", "log_file", fallback="~/.cache/tandem/tandem.log"))
        self.color_output = getboolean("logging", "color_output", fallback=True)
        self.log_to_file = getboolean("logging", "log_to_file", fallback=False)
        self.log_to_console = getboolean("logging", "log_to_console", fallback=True)
        self.use_utc = getboolean("logging", "timestamp_utc", fallback=False)
        self.log_format = get("logging", "log_format", fallback="text").lower()
        self.max_log_size_kb = getint("logging", "max_log_size_kb", fallback=0)

        level_str = get("logging", "level", fallback="info").lower()
        self.min_level = self.LEVELS.get(level_str, 20)

        self.console = console or Console(stderr=True, no_color=not self.color_output, highlight=False)

        if self.log_to_file:
            self._ensure_dir(self.log_file)

        self._lock = threading.Lock()

    def child(self, name):
        """Logger writing to the same sinks under ``<parent>.<name>``."""
        return Logger(f"{self.name}.{name}", _shared=self.__dict__)

    def set_level(self, level):
        self.min_level = self.LEVELS.get(level.lower(), self.min_level)

    def _ensure_dir(self, filepath):
        dirpath = os.path.dirname(filepath)
        if dirpath:
            os.makedirs(dirpath, exist_ok=True)

    def _get_timestamp(self):
        if self.use_utc:
            now = datetime.datetime.now(datetime.timezone.utc)
        else:
            now = datetime.datetime.now()
        return now.strftime("%Y-%m-%d %H:%M:%S")

    def _rotate_if_needed(self, filepath):
        if self.max_log_size_kb <= 0:
            return
        if os.path.exists(filepath) and os.path.getsize(filepath) > self.max_log_size_kb * 1024:
            os.replace(filepath, filepath + ".1")

    def _write_file(self, filepath, message):
        if not self.log_to_file:
            return
        try:
            self._rotate_if_needed(filepath)
            with open(filepath, "a", encoding="utf-8") as f:
                f.write(message + "\n")
        except OSError as e:
            self.log_to_file = False
            self.console.print(f"logger: cannot write {filepath}: {e}, file logging disabled",
                               style="yellow", markup=False)

    def _format_text(self, level, message):
        timestamp = self._get_timestamp()
        return f"[{timestamp}] [{self.name}] [{level}] {message}"

    def _format_json(self, level, message):
        return json.dumps({
            "timestamp": self._get_timestamp(),
            "logger": self.name,
            "level": level,
            "message": message
        })

    def _format_message(self, level, message):
        if self.log_format == "json":
            return self._format_json(level, message)
        return self._format_text(level, message)

    def _log_to_console(self, level, message):
        if not self.log_to_console:
            return
        if self.log_format == "json":
            self.console.print(self._format_json(level, message), markup=False, highlight=False)
            return
        style = self.LOG_STYLES.get(level, "")
        prefix = "::" if level in ("INFO", "SUCCESS", "DEBUG") else f"{level.lower()}:"
        self.console.print(f"[{style}]{prefix}[/] {escape(message)}")

    def _should_log(self, level):
        return self.LEVELS.get(level.lower(), 0) >= self.min_level

    def log(self, level, message):
        level = level.upper()
        if not self._should_log(level):
            return

        message = str(message)
        with self._lock:
            self._log_to_console(level, message)
            self._write_file(self.log_file, self._format_message(level, message))

    def debug(self, message):
        self.log("DEBUG", message)

    def info(self, message):
        self.log("INFO", message)

    def success(self, message):
        self.log("SUCCESS", message)

    def warning(self, message):
        self.log("WARNING", message)

    def error(self, message):
        self.log("ERROR", message)
