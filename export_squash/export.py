# -*- coding: utf-8 -*-

import copy
import json
import logging
import os
import random
import shutil
import tarfile
from collections import OrderedDict, namedtuple
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from packaging import version as packaging_version

from export_squash import merge
from export_squash.errors import (
    ArchiveIOError,
    FormatError,
    NotFoundError,
    SquashError,
)
from export_squash.layer import LAYER_VERSION, SHORT_ID_LENGTH, Layer, LayerConfig
from export_squash.lib.common import (
    current_date,
    dump_json,
    extract_filter,
    layer_id_from,
)

HistoryEntry = namedtuple("HistoryEntry", ["id", "command", "squashed"])

# Length of the command shown in the history
COMMAND_LENGTH = 60


class Export(object):
    """
    Unpacked image export (the 'docker save' archive in the legacy format):

        repositories
        <layer>/VERSION
        <layer>/json
        <layer>/layer.tar

    Layers form a single chain linked by the parent IDs. Layers are
    indexed by their ID; every layer owns the list of its children and
    references its parent only by the ID.
    """

    def __init__(self, log, workdir: str):
        self.log: logging.Logger = log
        self.workdir: str = workdir
        self.layers: Dict[str, Layer] = OrderedDict()
        self.repositories: Dict[str, Dict[str, str]] = OrderedDict()

    @classmethod
    def load(cls, log, source, workdir: str) -> "Export":
        """
        Reads the export archive from the source, which can be a path
        or a binary stream, unpacking it to the working directory.
        """
        export = cls(log, workdir)
        export._unpack(source)
        export._read_repositories()
        export._read_layers()
        export._validate()

        log.info("Export has %s layers" % len(export.layers))

        return export

    @property
    def repositories_file(self) -> str:
        return os.path.join(self.workdir, "repositories")

    def _unpack(self, source):
        if isinstance(source, (str, os.PathLike)):
            if not os.path.exists(source):
                raise ArchiveIOError(f"Export archive not found: {source}")

            self.log.info("Reading export archive %s..." % source)
        else:
            self.log.info("Reading export archive from stream...")

        try:
            if isinstance(source, (str, os.PathLike)):
                tar = tarfile.open(source, "r")
            else:
                tar = tarfile.open(fileobj=source, mode="r|*")

            with tar:
                tar.extractall(self.workdir, **extract_filter(trusted=False))
        except tarfile.TarError as e:
            raise FormatError(f"Failed to read the export archive: {e}")
        except OSError as e:
            raise ArchiveIOError(f"Failed to unpack the export archive: {e}")

        self.log.debug("Export unpacked to %s" % self.workdir)

    def _read_repositories(self):
        if not os.path.exists(self.repositories_file):
            self.log.debug("No repositories file found in the export")
            return

        try:
            with open(self.repositories_file, "r") as f:
                repositories = json.load(f, object_pairs_hook=OrderedDict)
        except ValueError as e:
            raise FormatError(f"Malformed repositories file: {e}")

        if not isinstance(repositories, dict):
            raise FormatError("Malformed repositories file: object expected")

        for name, tags in repositories.items():
            if not isinstance(tags, dict) or not all(
                isinstance(layer_id, str) for layer_id in tags.values()
            ):
                raise FormatError(
                    f"Malformed repositories file: bad tags for '{name}' repository"
                )

        self.repositories = repositories

    def _read_layers(self):
        for name in sorted(os.listdir(self.workdir)):
            path = os.path.join(self.workdir, name)

            if not os.path.isdir(path):
                continue

            layer = Layer(self._read_layer_config(name, path), path)
            self._check_layer_version(layer)
            self.layers[layer.id] = layer

        for layer in self.layers.values():
            if not layer.parent:
                continue

            if layer.parent not in self.layers:
                raise FormatError(
                    f"Layer {layer.id} references a missing parent layer {layer.parent}"
                )

            self.layers[layer.parent].children.append(layer)

    def _read_layer_config(self, name: str, path: str) -> LayerConfig:
        json_file = os.path.join(path, "json")

        if not os.path.exists(json_file):
            raise FormatError(f"Manifest for layer {name} is missing")

        try:
            with open(json_file, "r") as f:
                metadata = json.load(f, object_pairs_hook=OrderedDict)
        except ValueError as e:
            raise FormatError(f"Malformed manifest of layer {name}: {e}")

        if not isinstance(metadata, dict) or not isinstance(metadata.get("id"), str):
            raise FormatError(f"Malformed manifest of layer {name}: no layer id")

        if metadata["id"] != name:
            raise FormatError(
                f"Manifest of layer {name} declares a different id: {metadata['id']}"
            )

        return LayerConfig(metadata)

    def _check_layer_version(self, layer: Layer):
        if not os.path.exists(layer.version_file):
            return

        with open(layer.version_file, "r") as f:
            value = f.read().strip()

        try:
            layer_version = packaging_version.parse(value)
        except packaging_version.InvalidVersion:
            raise FormatError(f"Layer {layer.id} has invalid version '{value}'")

        if layer_version.major > packaging_version.parse(LAYER_VERSION).major:
            raise FormatError(
                f"Layer {layer.id} has unsupported version {value}"
            )

    def _validate(self):
        for name, tags in self.repositories.items():
            for tag, layer_id in tags.items():
                if layer_id not in self.layers:
                    raise FormatError(
                        f"Tag {name}:{tag} references a missing layer {layer_id}"
                    )

        for layer in self.layers.values():
            seen = set()
            parent = layer

            while parent is not None:
                if parent.id in seen:
                    raise FormatError(
                        f"Parent chain of layer {layer.id} forms a cycle"
                    )

                seen.add(parent.id)
                parent = self.parent_of(parent)

    def check_single_branch(self):
        """
        The export may hold multiple images built on top of the same
        layers. We can't decide which one to squash, so such exports
        are rejected.
        """
        for name, tags in self.repositories.items():
            if len(set(tags.values())) > 1:
                raise FormatError(
                    f"The export contains multiple images for the '{name}' repository, "
                    "you need to generate the export from a specific image ID or tag"
                )

    def parent_of(self, layer: Layer) -> Optional[Layer]:
        if not layer.parent:
            return None

        return self.layers.get(layer.parent)

    def root(self) -> Layer:
        roots = [layer for layer in self.layers.values() if not layer.parent]

        if not roots:
            raise FormatError("The export does not contain any layers")

        if len(roots) > 1:
            raise FormatError(
                f"The export contains {len(roots)} unrelated layer chains"
            )

        return roots[0]

    def get_by_id(self, layer_id: str) -> Layer:
        if layer_id in self.layers:
            return self.layers[layer_id]

        if len(layer_id) >= SHORT_ID_LENGTH:
            matches = [
                layer
                for layer in self.layers.values()
                if layer.id.startswith(layer_id)
            ]

            if len(matches) == 1:
                return matches[0]

        raise NotFoundError(f"No layer matching {layer_id}")

    def child_of(self, layer_id: str) -> Optional[Layer]:
        layer = self.get_by_id(layer_id)

        if len(layer.children) > 1:
            raise FormatError(
                f"Layer {layer_id[:SHORT_ID_LENGTH]} has {len(layer.children)} children, "
                "squashing branched history is not supported"
            )

        if layer.children:
            return layer.children[0]

        return None

    def chain(self, start: Optional[Layer] = None) -> List[Layer]:
        """Layers from the start (root by default) to the last one"""
        layers = []
        layer = start or self.root()

        while layer is not None:
            layers.append(layer)
            layer = self.child_of(layer.id)

        return layers

    def last_child(self) -> Layer:
        return self.chain()[-1]

    def _first_layer(self, predicate: Callable[[Layer], bool]) -> Optional[Layer]:
        for layer in self.chain():
            if predicate(layer):
                return layer

        return None

    def first_squash(self) -> Optional[Layer]:
        """First layer created by a previous squash"""
        return self._first_layer(lambda layer: layer.config.is_squash_marker)

    def first_from(self) -> Optional[Layer]:
        """First layer adding the base image filesystem"""
        return self._first_layer(lambda layer: layer.config.is_from_marker)

    def resolve_start(self, from_layer: Optional[str] = None) -> Layer:
        """
        Selects the layer to squash from. An explicitly requested layer
        ("root" for the first one) wins, then a layer squashed
        previously, then the base image layer and finally the root.
        """
        if from_layer:
            if from_layer == "root":
                return self.root()

            return self.get_by_id(from_layer)

        start = self.first_squash()

        if start is None:
            start = self.first_from()

        if start is None:
            start = self.root()

        return start

    def extract_layers(self):
        for layer in self.chain():
            layer.extract(self.log)

    def remove_extracted_layers(self, keep: Iterable[str] = ()):
        keep = set(keep)

        for layer in self.layers.values():
            if layer.id in keep:
                continue

            layer.remove_extracted()

    def insert_layer(self, parent_id: str) -> Layer:
        """
        Inserts a new, empty layer right after the parent layer.
        The layer is marked as squashed, so it is picked as the squash
        point next time.
        """
        parent = self.get_by_id(parent_id)

        metadata = copy.deepcopy(parent.config.metadata)
        metadata.pop("container", None)

        layer_id = layer_id_from(str(random.getrandbits(128)))

        container_config = metadata.get("container_config") or OrderedDict()
        container_config["Cmd"] = [
            "/bin/sh",
            "-c",
            "%s from %s"
            % (LayerConfig.SQUASH_MARKER, parent.id[:SHORT_ID_LENGTH]),
        ]

        metadata["id"] = layer_id
        metadata["parent"] = parent.id
        metadata["created"] = current_date()
        metadata["container_config"] = container_config
        metadata["Size"] = 0

        config = LayerConfig(metadata)
        config.changed = True

        layer = Layer(config, os.path.join(self.workdir, layer_id))

        try:
            os.makedirs(layer.extracted_dir)
        except OSError as e:
            raise ArchiveIOError(f"Could not prepare the new layer directory: {e}")

        layer.children = parent.children
        parent.children = [layer]

        for child in layer.children:
            child.config.parent = layer.id

        self.layers[layer.id] = layer

        return layer

    def _detach(self, layer: Layer):
        parent = self.parent_of(layer)

        if parent is not None:
            parent.children.remove(layer)

        del self.layers[layer.id]

        try:
            shutil.rmtree(layer.path)
        except OSError as e:
            raise ArchiveIOError(
                f"Could not remove the layer {layer.id[:SHORT_ID_LENGTH]}: {e}"
            )

    def rename_layer(self, layer: Layer, new_id: str, aliases: Iterable[str] = ()):
        """
        Changes the ID of the layer. Tags pointing to the old ID, or
        to any of the aliases, are moved to the new one.
        """
        old_id = layer.id
        new_path = os.path.join(self.workdir, new_id)

        if new_id in self.layers or os.path.exists(new_path):
            raise FormatError(f"Layer {new_id} already exists in the export")

        try:
            os.rename(layer.path, new_path)
        except OSError as e:
            raise ArchiveIOError(f"Could not move the layer {old_id}: {e}")

        layer.path = new_path
        layer.config.id = new_id

        del self.layers[old_id]
        self.layers[new_id] = layer

        for child in layer.children:
            child.config.parent = new_id

        moved = set(aliases)
        moved.add(old_id)

        for tags in self.repositories.values():
            for tag, layer_id in tags.items():
                if layer_id in moved:
                    tags[tag] = new_id

    def squash_layers(self, start: Layer) -> Layer:
        """
        Merges all layers following the start layer into the start
        layer, oldest first. Merged layers are removed from the export
        and the start layer gets a new ID, derived from its content.
        """
        descendants = self.chain(start)[1:]

        if not descendants:
            self.log.info(
                "Layer %s is the last layer, nothing to squash"
                % start.id[:SHORT_ID_LENGTH]
            )
            return start

        for layer in [start] + descendants:
            if not os.path.isdir(layer.extracted_dir):
                raise ArchiveIOError(
                    f"Layer {layer.id[:SHORT_ID_LENGTH]} is not unpacked"
                )

        # Files in the layers which are not squashed
        lower_paths = set()
        parent = self.parent_of(start)

        while parent is not None:
            if not os.path.isdir(parent.extracted_dir):
                raise ArchiveIOError(
                    f"Layer {parent.id[:SHORT_ID_LENGTH]} is not unpacked"
                )

            lower_paths.update(merge.tree_paths(parent.extracted_dir))
            parent = self.parent_of(parent)

        self.log.info(
            "Squashing %s layers into %s..."
            % (len(descendants), start.id[:SHORT_ID_LENGTH])
        )

        for layer in descendants:
            self.log.debug("Squashing layer %s..." % layer.id[:SHORT_ID_LENGTH])

            try:
                merge.overlay(
                    layer.extracted_dir, start.extracted_dir, lower_paths, self.log
                )
            except OSError as e:
                raise ArchiveIOError(
                    f"Squashing layer {layer.id[:SHORT_ID_LENGTH]} failed: {e}"
                )

        # The runtime configuration of the image is the one of the newest layer
        start.config.config = copy.deepcopy(descendants[-1].config.config)

        for layer in reversed(descendants):
            self._detach(layer)

        new_id = layer_id_from(
            "%s:%s" % (start.parent, merge.tree_digest(start.extracted_dir))
        )
        self.rename_layer(start, new_id, [layer.id for layer in descendants])

        self.log.info("Squashing finished!")

        return start

    def tag(self, repository: str, tag: str, layer_id: str):
        if not layer_id:
            raise SquashError("Provided layer id cannot be null")

        self.repositories[repository] = OrderedDict([(tag, layer_id)])

    def write_repositories(self):
        with open(self.repositories_file, "w") as f:
            f.write(dump_json(self.repositories, new_line=True))

    def history(self, squashed: Optional[str] = None) -> Iterator[HistoryEntry]:
        """Layers from the root to the last one, with their commands"""
        layer = self.root()

        while layer is not None:
            yield HistoryEntry(
                layer.id, layer.config.command[:COMMAND_LENGTH], layer.id == squashed
            )
            layer = self.child_of(layer.id)

    def write(self, stream):
        """
        Writes the export as a tar stream. Layers are written root first,
        so the stream can be consumed layer by layer.
        """
        with tarfile.open(fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            if self.repositories:
                self.write_repositories()
                tar.add(self.repositories_file, arcname="repositories")

            for layer in self.chain():
                if layer.config.changed:
                    layer.write_metadata()

                tar.add(layer.path, arcname=layer.id, recursive=False)

                for name in ("VERSION", "json", "layer.tar"):
                    path = os.path.join(layer.path, name)

                    if os.path.exists(path):
                        tar.add(path, arcname="%s/%s" % (layer.id, name))
