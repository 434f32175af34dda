#lifecycle_engine\staging\templates.py

"""
Service code staging from versioned template archives.

Archives are named `<service>-<version>.zip` and looked up in the
`stable`, `beta` and `archived` category folders, then the templates root.
"""

import logging
import shutil
import tempfile
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

from lifecycle_engine.core.errors import StepFailed
from lifecycle_engine.core.models import SERVICES, Customer

logger = logging.getLogger(__name__)


CATEGORIES = ("stable", "beta", "archived")
JUNK = ("__MACOSX", ".DS_Store")
PRESERVED = (".env", "uploads")


class TemplateStager(ABC):
    @abstractmethod
    def missing_templates(self, version: str) -> List[str]:
        """Archive names that would be needed for `version` but are absent."""
        raise NotImplementedError

    @abstractmethod
    def stage(self, customer: Customer, services: Iterable[str] = SERVICES) -> Path:
        """Lay out service code under the customer directory. Returns that directory."""
        raise NotImplementedError

    @abstractmethod
    def remove(self, customer: Customer) -> None:
        """Delete every on-disk artifact of the customer."""
        raise NotImplementedError


class ZipTemplateStager(TemplateStager):
    def __init__(self, templates_path: str | Path, customers_path: str | Path, default_version: str):
        self._templates = Path(templates_path)
        self._customers = Path(customers_path)
        self._default_version = default_version

    def resolve_version(self, version: Optional[str]) -> str:
        if not version or version == "latest":
            return self._default_version
        return version

    def find_archive(self, service: str, version: str) -> Optional[Path]:
        name = f"{service}-{self.resolve_version(version)}.zip"
        for candidate in [self._templates / c / name for c in CATEGORIES] + [self._templates / name]:
            if candidate.is_file():
                return candidate
        return None

    def missing_templates(self, version: str) -> List[str]:
        version = self.resolve_version(version)
        return [
            f"{service}-{version}.zip"
            for service in SERVICES
            if self.find_archive(service, version) is None
        ]

    def customer_dir(self, customer: Customer) -> Path:
        return self._customers / customer.slug

    def stage(self, customer: Customer, services: Iterable[str] = SERVICES) -> Path:
        root = self.customer_dir(customer)
        root.mkdir(parents=True, exist_ok=True)
        (root / "logs").mkdir(exist_ok=True)

        for service in services:
            archive = self.find_archive(service, customer.template_version)
            if archive is None:
                version = self.resolve_version(customer.template_version)
                raise StepFailed("stage_code", f"template {service}-{version}.zip not found")
            self._stage_service(archive, root / service)
            logger.info(f"[{customer.domain}] {service} staged from {archive.name}")

        return root

    def _stage_service(self, archive: Path, target: Path) -> None:
        with tempfile.TemporaryDirectory(prefix="stage-", dir=target.parent) as tmp:
            extracted = Path(tmp) / "code"
            _safe_extract(archive, extracted)
            source = _unwrap(extracted)

            # Keep operator-owned files from a previous run
            for name in PRESERVED:
                existing = target / name
                if existing.exists():
                    staged = source / name
                    if staged.is_dir():
                        shutil.rmtree(staged)
                    elif staged.exists():
                        staged.unlink()
                    shutil.move(str(existing), str(staged))

            if target.exists():
                shutil.rmtree(target)
            shutil.move(str(source), str(target))

    def remove(self, customer: Customer) -> None:
        root = self.customer_dir(customer)
        if root.exists():
            shutil.rmtree(root)
            logger.info(f"[{customer.domain}] removed {root}")


def _safe_extract(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True)
    root = dest.resolve()
    try:
        with zipfile.ZipFile(archive) as zf:
            for member in zf.infolist():
                parts = Path(member.filename).parts
                if any(part in JUNK for part in parts):
                    continue
                resolved = (dest / member.filename).resolve()
                if root != resolved and root not in resolved.parents:
                    raise StepFailed("stage_code", f"unsafe path in {archive.name}: {member.filename}")
                zf.extract(member, dest)
    except zipfile.BadZipFile as e:
        raise StepFailed("stage_code", f"{archive.name} is not a zip archive") from e


def _unwrap(extracted: Path) -> Path:
    """Archives built from a folder carry that folder as a single wrapper."""
    entries = list(extracted.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and (entries[0] / "package.json").exists():
        return entries[0]
    return extracted
