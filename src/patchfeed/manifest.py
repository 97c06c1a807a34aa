"""Incremental update manifests.

An incremental manifest lists every released version and every file of the
newest build:

    <Update Name="Billing">
      <Versions>
        <Version Version="2.1.0" PublishDate="2024-05-01T10:00:00Z">Fixed printing.</Version>
      </Versions>
      <Files>
        <File RelativePath="app.exe" Url="files/app.exe" Size="..." Timestamp="...">
          <Hash>...</Hash>
          <Signature>...</Signature>
        </File>
      </Files>
    </Update>

Only the files that differ from the local install are downloaded, into a
fresh staging directory. Promoting the staged files over the install is
left to the caller.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from xml.etree import ElementTree as ET

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring as parse_xml
from packaging.version import Version

from patchfeed.crypto.trust import TrustContext
from patchfeed.errors import ManifestFormatError, MissingDirectoryError
from patchfeed.files import FileDescriptor
from patchfeed.models.enums import UpdateStrategy
from patchfeed.models.versions import VersionEntry, sort_versions
from patchfeed.observability import get_logger
from patchfeed.progress import ProgressReporter, child_progress, raise_if_cancelled
from patchfeed.sync import SyncResult, run_staged
from patchfeed.transport.http import UpdateTransport

logger = get_logger(__name__)

ROOT_TAG = "Update"


def parse_document(xml_text: str | bytes) -> ET.Element:
    """Parse untrusted XML, rejecting entity expansion and external references.

    Raises:
        ManifestFormatError: If the document is not well-formed or is refused.
    """
    try:
        return parse_xml(xml_text)
    except ET.ParseError as e:
        raise ManifestFormatError(f"not well-formed XML ({e})") from e
    except DefusedXmlException as e:
        raise ManifestFormatError(f"forbidden XML construct ({type(e).__name__})") from e


def coerce_version(value: str | Version) -> Version:
    return value if isinstance(value, Version) else Version(str(value))


class UpdateManifest:
    """A parsed, signature-verified incremental update.

    Attributes:
        product_name: Product the update belongs to.
        versions: Every listed version, newest first.
        files: Every file of the newest build, in manifest order.
    """

    strategy = UpdateStrategy.INCREMENTAL

    def __init__(
        self,
        product_name: str,
        versions: Iterable[VersionEntry],
        files: Iterable[FileDescriptor],
        trust: TrustContext,
        transport: UpdateTransport,
    ) -> None:
        self.product_name = product_name
        self.versions = sort_versions(versions)
        self.files = tuple(files)
        self._trust = trust
        self._transport = transport

    def __repr__(self) -> str:
        return (
            f"UpdateManifest({self.product_name!r}, new_version={self.new_version}, "
            f"files={len(self.files)})"
        )

    @classmethod
    def parse(
        cls,
        xml_text: str | bytes,
        trust: TrustContext,
        transport: UpdateTransport,
    ) -> UpdateManifest:
        """Parse and verify a manifest document.

        Raises:
            ManifestFormatError: If the document is malformed.
            SignatureVerificationError: If any file's signature fails; one bad
                file rejects the whole manifest.
            UnsafePathError: If any relative path escapes the install directory.
        """
        return cls.from_element(parse_document(xml_text), trust, transport)

    @classmethod
    def from_element(
        cls,
        root: ET.Element,
        trust: TrustContext,
        transport: UpdateTransport,
    ) -> UpdateManifest:
        product_name = root.get("Name")
        if not product_name:
            raise ManifestFormatError("root element has no Name attribute")
        versions_node = root.find("Versions")
        files_node = root.find("Files")
        if versions_node is None or files_node is None:
            raise ManifestFormatError("manifest requires Versions and Files elements")

        versions = [VersionEntry.from_xml(node) for node in versions_node.findall("Version")]
        files = [FileDescriptor.from_xml(node, trust) for node in files_node]
        return cls(product_name, versions, files, trust, transport)

    @property
    def new_version(self) -> Version:
        return self.versions[0].version

    @property
    def publish_date(self) -> datetime:
        return self.versions[0].publish_date

    def get_changes(self, installed_version: str | Version) -> str:
        """Changelog of every version newer than ``installed_version``, newest first."""
        installed = coerce_version(installed_version)
        return "\n".join(
            entry.changes.rstrip() for entry in self.versions if entry.version > installed
        )

    def stale_files(self, install_dir: str | Path) -> list[FileDescriptor]:
        """Files whose installed copy is missing or differs.

        Raises:
            MissingDirectoryError: If ``install_dir`` does not exist.
        """
        return [f for f in self.files if not f.matches(install_dir)]

    def sync(self, install_dir: str | Path, progress: ProgressReporter | None = None) -> SyncResult:
        """Download every stale file into a new staging directory.

        Raises:
            MissingDirectoryError: If ``install_dir`` does not exist. Every
                other failure is reported through the result.
        """
        install_path = Path(install_dir)
        if not install_path.is_dir():
            raise MissingDirectoryError(str(install_path))

        def operation(staging: Path, reporter: ProgressReporter) -> None:
            reporter.can_cancel = True
            new_files = self.stale_files(install_path)
            reporter.maximum = sum(f.length for f in new_files)
            reporter.progress = 0
            logger.info(
                "patchfeed.manifest.sync_started",
                product=self.product_name,
                version=str(self.new_version),
                files=len(new_files),
                total_files=len(self.files),
                bytes=reporter.maximum,
            )
            self._download_all(new_files, staging, reporter)

        return run_staged(operation, progress, product_name=self.product_name)

    def download_files(
        self,
        install_dir: str | Path,
        progress: ProgressReporter | None = None,
    ) -> Path | None:
        """Download every stale file into a new staging directory.

        Returns:
            The staging directory, or None if the user cancelled.

        Raises:
            MissingDirectoryError: If ``install_dir`` does not exist.
            UpdateFailedError: If anything else went wrong; the staging
                directory has already been removed.
        """
        return self.sync(install_dir, progress).unwrap()

    def _download_all(
        self,
        files: Sequence[FileDescriptor],
        staging: Path,
        reporter: ProgressReporter,
    ) -> None:
        for descriptor in files:
            raise_if_cancelled(reporter)
            reporter.caption = f"Downloading {descriptor.relative_path}"
            descriptor.download_file(
                staging,
                child_progress(reporter, descriptor.length),
                self._transport,
                self._trust,
            )
            raise_if_cancelled(reporter)

    def to_xml(self) -> ET.Element:
        return build_manifest_xml(self.product_name, self.versions, self.files)


def build_manifest_xml(
    product_name: str,
    versions: Iterable[VersionEntry],
    files: Iterable[FileDescriptor],
) -> ET.Element:
    """Publisher side: assemble a manifest element that ``UpdateManifest.parse`` accepts."""
    root = ET.Element(ROOT_TAG, {"Name": product_name})
    versions_node = ET.SubElement(root, "Versions")
    for entry in sort_versions(versions):
        versions_node.append(entry.to_xml())
    files_node = ET.SubElement(root, "Files")
    for descriptor in files:
        files_node.append(descriptor.to_xml())
    return root


def serialize_document(element: ET.Element) -> bytes:
    ET.indent(element)
    return ET.tostring(element, encoding="utf-8", xml_declaration=True)
