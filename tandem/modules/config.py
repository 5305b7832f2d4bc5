# tandem/modules/config.py
"""
Configuration for tandem.

A single ``TandemConfig`` is built once by the CLI and handed to every
component constructor; nothing reads settings from module globals.

File format (INI, first existing location wins, none means defaults):

    [tandem]
    aur_url = https://aur.archlinux.org
    build_dir = ~/.cache/tandem
    mode = any            # any | repo | aur
    rebuild = no          # no | yes | tree | all
    devel = true
    ignore = linux, linux-headers

    [bin]
    pacman = pacman
    sudo_flags = -E

    [logging]
    level = info
"""

import configparser
import enum
import os

from tandem.modules.errors import TandemError

DEFAULT_LOCATIONS = [
    "/etc/tandem/tandem.conf",
    os.path.expanduser("~/.config/tandem/tandem.conf"),
]

DEFAULT_AUR_URL = "https://aur.archlinux.org"
DEFAULT_CACHE_DIR = os.path.join(
    os.environ.get("XDG_CACHE_HOME", os.path.expanduser("~/.cache")), "tandem")


class ConfigError(TandemError):
    pass


class TargetMode(enum.Enum):
    ANY = "any"
    REPO = "repo"
    AUR = "aur"

    def at_least_repo(self) -> bool:
        return self in (TargetMode.ANY, TargetMode.REPO)

    def at_least_aur(self) -> bool:
        return self in (TargetMode.ANY, TargetMode.AUR)


class RebuildMode(enum.Enum):
    NO = "no"
    YES = "yes"
    TREE = "tree"
    ALL = "all"


class TandemConfig:
    def __init__(self, locations=None):
        self.locations = locations if locations is not None else DEFAULT_LOCATIONS
        self.config = configparser.ConfigParser()
        self.loaded_from = None
        self.reload()

    def reload(self):
        """(Re)load from the first existing file and resolve typed settings."""
        self.config = configparser.ConfigParser()
        self.loaded_from = None
        for path in self.locations:
            if os.path.isfile(path):
                try:
                    self.config.read(path)
                except configparser.Error as e:
                    raise ConfigError(f"invalid configuration file {path}: {e}") from e
                self.loaded_from = path
                break
        self._resolve()

    def _resolve(self):
        self.aur_url = self.get("tandem", "aur_url", fallback=DEFAULT_AUR_URL).rstrip("/")
        self.build_dir = os.path.expanduser(self.get("tandem", "build_dir", fallback=DEFAULT_CACHE_DIR))
        self.vcs_file = os.path.expanduser(
            self.get("tandem", "vcs_file", fallback=os.path.join(self.build_dir, "vcs.json")))
        self.mode = self._enum(TargetMode, "mode", "any")
        self.rebuild = self._enum(RebuildMode, "rebuild", "no")
        self.devel = self.getboolean("tandem", "devel", fallback=False)
        self.time_update = self.getboolean("tandem", "time_update", fallback=False)
        self.no_confirm = self.getboolean("tandem", "no_confirm", fallback=False)
        self.remove_make = self.getboolean("tandem", "remove_make", fallback=False)
        self.clean_after = self.getboolean("tandem", "clean_after", fallback=False)
        self.provides = self.getboolean("tandem", "provides", fallback=True)
        self.max_concurrent_download = self.getint("tandem", "max_concurrent_download", fallback=0)
        self.request_split_n = self.getint("tandem", "request_split_n", fallback=150)
        self.ignore = self.getlist("tandem", "ignore")

        self.pacman_bin = self.get("bin", "pacman", fallback="pacman")
        self.pacman_conf = self.get("bin", "pacman_conf", fallback="/etc/pacman.conf")
        self.pacman_db_path = self.get("bin", "pacman_db_path", fallback="/var/lib/pacman")
        self.makepkg_bin = self.get("bin", "makepkg", fallback="makepkg")
        self.makepkg_conf = self.get("bin", "makepkg_conf", fallback="")
        self.git_bin = self.get("bin", "git", fallback="git")
        self.sudo_bin = self.get("bin", "sudo", fallback="sudo")
        self.sudo_flags = self.getlist("bin", "sudo_flags", delimiter=" ")
        self.makepkg_flags = self.getlist("bin", "makepkg_flags", delimiter=" ")
        self.git_flags = self.getlist("bin", "git_flags", delimiter=" ")

        # per-invocation switches, set by the CLI
        self.needed = False
        self.as_deps = False
        self.as_explicit = False
        self.download_only = False
        self.no_deps = False
        self.no_check_deps = False
        self.full_graph = False

    def _enum(self, enum_cls, option, default):
        raw = self.get("tandem", option, fallback=default).strip().lower()
        try:
            return enum_cls(raw)
        except ValueError:
            valid = ", ".join(m.value for m in enum_cls)
            raise ConfigError(f"invalid value for {option}: {raw!r} (expected one of: {valid})")

    @property
    def download_workers(self) -> int:
        if self.max_concurrent_download > 0:
            return self.max_concurrent_download
        return os.cpu_count() or 4

    def get(self, section, option, fallback=None):
        try:
            return self.config.get(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getboolean(self, section, option, fallback=False):
        try:
            return self.config.getboolean(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getint(self, section, option, fallback=0):
        try:
            return self.config.getint(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getlist(self, section, option, fallback=None, delimiter=","):
        raw = self.get(section, option, fallback="")
        if raw:
            if delimiter == " ":
                return raw.split()
            return [item.strip() for item in raw.split(delimiter) if item.strip()]
        return fallback or []

    def __getitem__(self, section):
        if section in self.config:
            return dict(self.config[section])
        raise KeyError(f"section '{section}' not found")

    def __contains__(self, section):
        return section in self.config
