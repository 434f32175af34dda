#lifecycle_engine\proxy\nginx.py

"""nginx site files for production customers."""

import logging
import re
from pathlib import Path
from threading import Lock
from typing import List, Optional, Sequence

from lifecycle_engine.core.commands import CommandFailed, run_command
from lifecycle_engine.core.errors import Conflict, StepFailed
from lifecycle_engine.core.models import ServicePorts
from lifecycle_engine.proxy.base import ReverseProxyRegistrar

logger = logging.getLogger(__name__)


_PORTS_HEADER = re.compile(r"^# lifecycle-ports: backend=(\d+) admin=(\d+) store=(\d+)$", re.M)

_PROXY_HEADERS = """\
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_cache_bypass $http_upgrade;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;"""


def site_name(domain: str) -> str:
    return domain.replace(".", "-")


def render_site(domain: str, ports: ServicePorts, cert_root: str = "/etc/letsencrypt/live") -> str:
    name = site_name(domain)
    return f"""\
# lifecycle-ports: backend={ports.backend} admin={ports.admin} store={ports.store}
server {{
    server_name {domain} www.{domain};
    listen 80;
    listen [::]:80;

    return 301 https://$server_name$request_uri;
}}

server {{
    server_name {domain} www.{domain};
    listen 443 ssl http2;
    listen [::]:443 ssl http2;

    ssl_certificate {cert_root}/{domain}/fullchain.pem;
    ssl_certificate_key {cert_root}/{domain}/privkey.pem;
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_ciphers HIGH:!aNULL:!MD5;

    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;

    client_max_body_size 100M;

    # Store
    location / {{
        proxy_pass http://127.0.0.1:{ports.store};
{_PROXY_HEADERS}
    }}

    # Backend API
    location /api/ {{
        proxy_pass http://127.0.0.1:{ports.backend}/;
{_PROXY_HEADERS}
    }}

    # Admin panel
    location /qpanel {{
        proxy_pass http://127.0.0.1:{ports.admin};
{_PROXY_HEADERS}
    }}

    access_log /var/log/nginx/{name}_access.log;
    error_log /var/log/nginx/{name}_error.log;
}}
"""


class NginxRegistrar(ReverseProxyRegistrar):
    """
    One site file per domain in sites-available, symlinked into
    sites-enabled. Writes are serialized across all customers since
    they share one running configuration.
    """

    def __init__(
        self,
        sites_available: str | Path,
        sites_enabled: str | Path,
        test_command: Sequence[str] = ("nginx", "-t"),
        reload_command: Sequence[str] = ("nginx", "-s", "reload"),
        cert_root: str = "/etc/letsencrypt/live",
    ):
        self._available = Path(sites_available)
        self._enabled = Path(sites_enabled)
        self._test_command: List[str] = list(test_command)
        self._reload_command: List[str] = list(reload_command)
        self._cert_root = cert_root
        self._lock = Lock()

    def _paths(self, domain: str):
        name = site_name(domain)
        return self._available / name, self._enabled / name

    def registered_ports(self, domain: str) -> Optional[ServicePorts]:
        site, _ = self._paths(domain)
        if not site.is_file():
            return None
        match = _PORTS_HEADER.search(site.read_text(encoding="utf-8"))
        if not match:
            return None
        return ServicePorts(*(int(p) for p in match.groups()))

    def register(self, domain: str, ports: ServicePorts) -> None:
        with self._lock:
            current = self.registered_ports(domain)
            if current is not None:
                if current == ports:
                    logger.info(f"[nginx] {domain} already routed to {ports.as_tuple()}")
                    return
                raise Conflict(
                    f"{domain} is already routed to {current.as_tuple()}, not {ports.as_tuple()}"
                )

            site, link = self._paths(domain)
            site.parent.mkdir(parents=True, exist_ok=True)
            link.parent.mkdir(parents=True, exist_ok=True)
            site.write_text(render_site(domain, ports, self._cert_root), encoding="utf-8")
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(site)

            try:
                self._apply()
            except StepFailed:
                # Leave the running configuration as it was
                link.unlink(missing_ok=True)
                site.unlink(missing_ok=True)
                raise

        logger.info(f"[nginx] ✅ {domain} routed to {ports.as_tuple()}")

    def unregister(self, domain: str) -> None:
        with self._lock:
            site, link = self._paths(domain)
            if not site.exists() and not link.is_symlink():
                logger.debug(f"[nginx] no site for {domain}")
                return
            link.unlink(missing_ok=True)
            site.unlink(missing_ok=True)
            self._run(self._reload_command, "reload_proxy")
        logger.info(f"[nginx] {domain} removed")

    def _apply(self) -> None:
        self._run(self._test_command, "register_proxy")
        self._run(self._reload_command, "register_proxy")

    def _run(self, argv: List[str], step: str) -> None:
        try:
            run_command(argv, timeout=30)
        except CommandFailed as e:
            raise StepFailed(step, f"{' '.join(argv)}: {e.output}") from e
