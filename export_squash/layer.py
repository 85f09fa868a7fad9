# -*- coding: utf-8 -*-

import os
import shutil
import tarfile
from typing import List, Optional

from export_squash.errors import ArchiveIOError
from export_squash.lib.common import Chdir, dump_json, extract_filter

LAYER_VERSION = "1.0"

# Short form of layer IDs used in logs and accepted as squash point
SHORT_ID_LENGTH = 12


class LayerConfig(object):
    """
    Metadata of a single layer, read from the ``<layer>/json`` file of
    the export. The parsed JSON is kept as is, so that fields we do not
    care about are written back untouched.
    """

    SQUASH_MARKER = "#(squash)"
    """ Command fragment of layers created by a previous squash """

    FROM_MARKER = "#(nop) ADD file"
    """ Command fragment of the layer adding the base image filesystem """

    def __init__(self, metadata: dict):
        self.metadata: dict = metadata
        self.changed = False

    @property
    def id(self) -> str:
        return self.metadata["id"]

    @id.setter
    def id(self, value: str):
        self.metadata["id"] = value
        self.changed = True

    @property
    def parent(self) -> str:
        return self.metadata.get("parent") or ""

    @parent.setter
    def parent(self, value: str):
        if value:
            self.metadata["parent"] = value
        else:
            self.metadata.pop("parent", None)
        self.changed = True

    @property
    def config(self) -> Optional[dict]:
        """Runtime configuration of the image (env, entrypoint, ...)"""
        return self.metadata.get("config")

    @config.setter
    def config(self, value: Optional[dict]):
        if value is None:
            self.metadata.pop("config", None)
        else:
            self.metadata["config"] = value
        self.changed = True

    @property
    def size(self) -> int:
        return self.metadata.get("Size", 0)

    @size.setter
    def size(self, value: int):
        self.metadata["Size"] = value
        self.changed = True

    def container_config(self) -> dict:
        return (
            self.metadata.get("container_config")
            or self.metadata.get("ContainerConfig")
            or {}
        )

    @property
    def cmd(self) -> List[str]:
        cmd = self.container_config().get("Cmd") or []

        if isinstance(cmd, str):
            return [cmd]

        return cmd

    @property
    def command(self) -> str:
        return " ".join(self.cmd)

    @property
    def is_squash_marker(self) -> bool:
        return self.SQUASH_MARKER in self.command

    @property
    def is_from_marker(self) -> bool:
        return self.FROM_MARKER in self.command

    def dump(self) -> str:
        return dump_json(self.metadata)


class Layer(object):
    """
    A node in the layer graph. The node owns the list of its children,
    the parent is only referenced by its ID (see Export.parent_of).
    """

    def __init__(self, config: LayerConfig, path: str):
        self.config: LayerConfig = config
        self.path: str = path
        """ Directory of the layer inside of the unpacked export """
        self.children: List["Layer"] = []

    def __repr__(self):
        return "<Layer %s>" % self.id[:SHORT_ID_LENGTH]

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def parent(self) -> str:
        return self.config.parent

    @property
    def layer_tar(self) -> str:
        return os.path.join(self.path, "layer.tar")

    @property
    def json_file(self) -> str:
        return os.path.join(self.path, "json")

    @property
    def version_file(self) -> str:
        return os.path.join(self.path, "VERSION")

    @property
    def extracted_dir(self) -> str:
        """Working directory holding the unpacked layer filesystem"""
        return os.path.join(self.path, "layer")

    def extract(self, log):
        """Unpacks the layer.tar archive to the working directory"""

        if not os.path.isfile(self.layer_tar):
            raise ArchiveIOError(
                f"Layer {self.id} does not have the layer.tar archive"
            )

        log.debug("Unpacking layer %s..." % self.id[:SHORT_ID_LENGTH])

        try:
            os.makedirs(self.extracted_dir, exist_ok=True)

            # Empty layers can be stored as an empty file
            if os.path.getsize(self.layer_tar) == 0:
                return

            with tarfile.open(
                self.layer_tar, "r", format=tarfile.PAX_FORMAT
            ) as tar:
                tar.extractall(
                    path=self.extracted_dir,
                    numeric_owner=True,
                    **extract_filter(trusted=True),
                )
        except (tarfile.TarError, OSError) as e:
            raise ArchiveIOError(
                f"Unpacking layer {self.id[:SHORT_ID_LENGTH]} failed: {e}"
            )

    def tar_layer(self, log):
        """
        Packs the working directory back to the layer.tar archive.
        Members are added in lexicographic order of their paths, so the
        same tree always results in the same member order.
        """

        if not os.path.isdir(self.extracted_dir):
            raise ArchiveIOError(
                f"Layer {self.id[:SHORT_ID_LENGTH]} is not unpacked, cannot pack it"
            )

        log.debug("Packing layer %s..." % self.id[:SHORT_ID_LENGTH])

        names = []

        for root, dirs, files in os.walk(self.extracted_dir):
            for name in dirs + files:
                names.append(
                    os.path.relpath(os.path.join(root, name), self.extracted_dir)
                )

        try:
            with tarfile.open(self.layer_tar, "w", format=tarfile.PAX_FORMAT) as tar:
                with Chdir(self.extracted_dir):
                    for name in sorted(names):
                        tar.add(name, recursive=False)
        except (tarfile.TarError, OSError) as e:
            raise ArchiveIOError(
                f"Packing layer {self.id[:SHORT_ID_LENGTH]} failed: {e}"
            )

        self.config.size = os.path.getsize(self.layer_tar)

    def remove_extracted(self):
        if not os.path.exists(self.extracted_dir):
            return

        try:
            shutil.rmtree(self.extracted_dir)
        except OSError as e:
            raise ArchiveIOError(
                f"Removing unpacked layer {self.id[:SHORT_ID_LENGTH]} failed: {e}"
            )

    def write_metadata(self):
        with open(self.json_file, "w") as f:
            f.write(self.config.dump())

        with open(self.version_file, "w") as f:
            f.write(LAYER_VERSION)

        self.config.changed = False
