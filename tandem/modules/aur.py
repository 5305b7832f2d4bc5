# tandem/modules/aur.py
"""
AUR RPC v5 client.

    client = AURClient(config)
    pkgs = client.info(["yay", "paru"])          # {name: Package}
    providers = client.search_providers("java-environment")  # [Package]

Info requests are split into chunks of ``request_split_n`` names (the RPC
rejects long URLs) and answered from an in-process cache afterwards.
"""

from __future__ import annotations
import json
import threading
import urllib.error
import urllib.parse
import urllib.request
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

from tandem.modules import logger as _logger
from tandem.modules.errors import TandemError
from tandem.modules.multierror import MultiError
from tandem.modules.package import Package

RPC_VERSION = 5
REQUEST_TIMEOUT = 30
USER_AGENT = "tandem/0.1"


class AURQueryError(TandemError):
    pass


class AURClient:
    def __init__(self, config, log: Optional[_logger.Logger] = None, opener=None):
        self.config = config
        self.base_url = config.aur_url
        self.split_n = max(1, config.request_split_n)
        self.log = log or _logger.Logger("tandem.aur", config)
        self._open = opener or urllib.request.urlopen
        self._cache: Dict[str, Optional[Package]] = {}
        self._lock = threading.Lock()

    # -------------------------
    # transport
    # -------------------------
    def _request(self, params: List[tuple]) -> List[dict]:
        query = urllib.parse.urlencode([("v", RPC_VERSION)] + params)
        url = f"{self.base_url}/rpc?{query}"
        self.log.debug(f"GET {url}")
        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        try:
            with self._open(req, timeout=REQUEST_TIMEOUT) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (urllib.error.URLError, OSError) as e:
            raise AURQueryError(f"AUR request failed: {e}") from e
        except ValueError as e:
            raise AURQueryError(f"AUR returned invalid JSON: {e}") from e

        if payload.get("type") == "error":
            raise AURQueryError(f"AUR error: {payload.get('error')}")
        return payload.get("results") or []

    # -------------------------
    # queries
    # -------------------------
    def info(self, names: Iterable[str]) -> Dict[str, Package]:
        """Packages found for ``names``; missing names are simply absent."""
        names = list(dict.fromkeys(names))
        with self._lock:
            wanted = [n for n in names if n not in self._cache]

        for i in range(0, len(wanted), self.split_n):
            chunk = wanted[i:i + self.split_n]
            results = self._request([("type", "info")] + [("arg[]", n) for n in chunk])
            found = {r["Name"]: Package.from_rpc(r) for r in results}
            with self._lock:
                for n in chunk:
                    self._cache[n] = found.get(n)

        with self._lock:
            return {n: self._cache[n] for n in names if self._cache.get(n) is not None}

    def get(self, name: str) -> Optional[Package]:
        return self.info([name]).get(name)

    def search(self, term: str, by: str = "name") -> List[Package]:
        results = self._request([("type", "search"), ("by", by), ("arg", term)])
        return [Package.from_rpc(r) for r in results]

    def search_providers(self, name: str) -> List[Package]:
        """Full records of the AUR package named ``name`` and of every package providing it."""
        names = {name}
        try:
            names.update(p.name for p in self.search(name, by="provides"))
        except AURQueryError as e:
            # "Too many package results" for short names is not fatal
            self.log.debug(f"provider search {name}: {e}")
        return sorted(self.info(sorted(names)).values(), key=lambda p: p.name)

    def find_providers(self, names: Iterable[str], workers: int) -> Dict[str, List[Package]]:
        """``search_providers`` for several names over a bounded pool."""
        names = list(dict.fromkeys(names))
        out: Dict[str, List[Package]] = {}
        if not names:
            return out
        errs = MultiError()
        with ThreadPoolExecutor(max_workers=max(1, min(workers, len(names)))) as ex:
            futures = {ex.submit(self.search_providers, n): n for n in names}
            for fut in as_completed(futures):
                name = futures[fut]
                try:
                    out[name] = fut.result()
                except AURQueryError as e:
                    errs.add(e)
        if errs.ret():
            raise errs
        return out
