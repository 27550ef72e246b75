"""Publish serialized reports to blob storage."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

from governance_exporter import constants
from governance_exporter.exceptions import StorageWriteError
from governance_exporter.file_handler import delete_files, write_temp_file
from governance_exporter.serializers import SERIALIZERS
from governance_exporter.settings import StorageTarget

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_blob_name(
    blob_prefix: str, file_name_base: str, timestamp: datetime, fmt: str
) -> str:
    """Return ``<blobPrefix>/<fileNameBase>_<yyyyMMdd_HHmmss>.<format>``."""
    stamp = timestamp.astimezone(timezone.utc).strftime(constants.BLOB_TIMESTAMP_FORMAT)
    name = f"{file_name_base}_{stamp}.{fmt}"
    prefix = blob_prefix.strip("/")
    return f"{prefix}/{name}" if prefix else name


def create_container_client(target: StorageTarget) -> ContainerClient:
    """Build a container client from a connection string or the ambient identity."""
    if target.connection_string:
        service = BlobServiceClient.from_connection_string(target.connection_string)
    else:
        service = BlobServiceClient(
            account_url=constants.BLOB_ACCOUNT_URL.format(account=target.storage_account),
            credential=DefaultAzureCredential(),
        )
    return service.get_container_client(target.container)


class StorageWriter:
    """Serializes rowsets and uploads one blob per requested format.

    Files are staged in a temporary location and removed after the upload,
    whether it succeeded or not.
    """

    def __init__(
        self,
        client_factory: Callable[[StorageTarget], ContainerClient] = create_container_client,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the writer.

        Args:
            client_factory: Builds the container client for a storage target
            clock: Source of the UTC timestamp embedded in blob names
        """
        self.client_factory = client_factory
        self.clock = clock

    def _preflight(self, target: StorageTarget) -> ContainerClient:
        """Verify the container is reachable and exists."""
        try:
            container = self.client_factory(target)
            exists = container.exists()
        except (AzureError, ValueError) as e:
            raise StorageWriteError(
                f"Storage container '{target.container}' is not reachable: {e}"
            ) from e
        if not exists:
            raise StorageWriteError(
                f"Storage container '{target.container}' does not exist"
            )
        return container

    def _upload(self, container: ContainerClient, blob_name: str, content: str, fmt: str) -> None:
        staged = write_temp_file(content, suffix=f".{fmt}")
        try:
            with open(staged, "rb") as data:
                container.upload_blob(
                    name=blob_name,
                    data=data,
                    overwrite=True,
                    content_settings=ContentSettings(
                        content_type=constants.CONTENT_TYPES[fmt]
                    ),
                )
        except AzureError as e:
            logger.error("Uploading '%s' failed: %s", blob_name, e)
            raise StorageWriteError(f"Upload of '{blob_name}' failed: {e}") from e
        finally:
            delete_files([staged])

    def write(
        self,
        rows: Sequence[Mapping[str, Any]],
        formats: Sequence[str],
        storage_target: StorageTarget,
        blob_prefix: str,
        file_name_base: str,
        group_by: str | None = None,
    ) -> int:
        """Write ``rows`` once per format.

        Args:
            rows: Uniform row objects, missing fields render as empty
            formats: Output formats, each one of json, csv or html
            storage_target: Destination account and container
            blob_prefix: Virtual directory inside the container
            file_name_base: Blob name stem, a UTC timestamp is appended
            group_by: Column to split HTML output into one table per value

        Returns:
            Number of files written.

        Raises:
            StorageWriteError: If the container is unreachable, a format is
                unsupported or an upload fails.
        """
        unsupported = [fmt for fmt in formats if fmt not in SERIALIZERS]
        if unsupported:
            raise StorageWriteError(f"Unsupported output format(s): {', '.join(unsupported)}")

        container = self._preflight(storage_target)
        timestamp = self.clock()

        written = 0
        for fmt in formats:
            content = SERIALIZERS[fmt](
                rows,
                title=file_name_base,
                subtitle=f"Generated {timestamp.astimezone(timezone.utc):%Y-%m-%d %H:%M:%S} UTC, {len(rows)} rows",
                group_by=group_by,
            )
            blob_name = build_blob_name(blob_prefix, file_name_base, timestamp, fmt)
            logger.debug("Uploading %s to %s/%s", fmt, storage_target.container, blob_name)
            self._upload(container, blob_name, content, fmt)
            logger.info("Wrote %s/%s (%d rows)", storage_target.container, blob_name, len(rows))
            written += 1
        return written
