"""Builders and readers of image exports used in tests."""

import hashlib
import json
import posixpath
import tarfile
from collections import OrderedDict, namedtuple
from io import BytesIO

MTIME = 1500000000

LayerSpec = namedtuple("LayerSpec", ["cmd", "entries", "layer_id", "parent"])

_DEFAULT = object()


def regular(name, content=b"", mode=0o644):
    if isinstance(content, str):
        content = content.encode("utf-8")

    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = mode
    info.mtime = MTIME

    return info, content


def directory(name, mode=0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    info.mtime = MTIME

    return info, None


def symlink(name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    info.mode = 0o777
    info.mtime = MTIME

    return info, None


def hardlink(name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    info.mtime = MTIME

    return info, None


def whiteout(path):
    return regular(posixpath.join(posixpath.dirname(path), ".wh." + posixpath.basename(path)))


def opaque(path):
    return regular(posixpath.join(path, ".wh..wh..opq"))


def layer(cmd, *entries, layer_id=None, parent=_DEFAULT):
    return LayerSpec(cmd, list(entries), layer_id, parent)


def base_layer(*entries):
    """Layer adding the base image filesystem"""
    return layer("#(nop) ADD file:8ac3a8d4c0ae in /", *entries)


def layer_tar(entries):
    buf = BytesIO()

    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for info, content in entries:
            tar.addfile(info, BytesIO(content) if content is not None else None)

    return buf.getvalue()


def _add_bytes(tar, name, data):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    info.mtime = MTIME
    tar.addfile(info, BytesIO(data))


def default_layer_id(index):
    """ID given by build_export to the layer at the index, unless set explicitly"""
    return "a%s" % hashlib.sha256(("layer-%d" % index).encode("utf-8")).hexdigest()[1:]


def build_export(layers, repositories=None):
    """
    Creates an export archive in the 'docker save' legacy layout.
    Every layer is a child of the previous one, unless the parent
    is provided explicitly. Returns the archive and the layer IDs.
    """
    ids = []
    buf = BytesIO()

    with tarfile.open(fileobj=buf, mode="w") as tar:
        if repositories is not None:
            _add_bytes(tar, "repositories", json.dumps(repositories).encode("utf-8"))

        for i, spec in enumerate(layers):
            layer_id = spec.layer_id or default_layer_id(i)

            if spec.parent is _DEFAULT:
                parent = ids[-1] if ids else None
            else:
                parent = spec.parent

            metadata = OrderedDict()
            metadata["id"] = layer_id
            if parent:
                metadata["parent"] = parent
            metadata["created"] = "2017-07-14T02:40:00.123456Z"
            metadata["container_config"] = {"Cmd": ["/bin/sh", "-c", spec.cmd]}
            metadata["config"] = {"Cmd": ["sh"], "Env": ["STEP=%d" % i]}

            info = tarfile.TarInfo(layer_id)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)

            _add_bytes(tar, "%s/VERSION" % layer_id, b"1.0")
            _add_bytes(tar, "%s/json" % layer_id, json.dumps(metadata).encode("utf-8"))
            _add_bytes(tar, "%s/layer.tar" % layer_id, layer_tar(spec.entries))

            ids.append(layer_id)

    return buf.getvalue(), ids


class ExportContent(object):
    """Parsed export archive, layers ordered from the root"""

    def __init__(self, data):
        self.names = []
        self.repositories = None
        self.metadata = OrderedDict()
        self.layer_tars = {}

        with tarfile.open(fileobj=BytesIO(data), mode="r") as tar:
            for member in tar.getmembers():
                self.names.append(member.name)

                if not member.isfile():
                    continue

                content = tar.extractfile(member).read()

                if member.name == "repositories":
                    self.repositories = json.loads(content)
                elif member.name.endswith("/json"):
                    metadata = json.loads(content)
                    self.metadata[metadata["id"]] = metadata
                elif member.name.endswith("/layer.tar"):
                    self.layer_tars[member.name.split("/")[0]] = content

        self.layers = self._chain()

    def _chain(self):
        children = {}
        root = None

        for layer_id, metadata in self.metadata.items():
            parent = metadata.get("parent")

            if parent:
                children[parent] = layer_id
            else:
                root = layer_id

        chain = []
        layer_id = root

        while layer_id:
            chain.append(layer_id)
            layer_id = children.get(layer_id)

        return chain

    def layer_names(self, layer_id):
        with tarfile.open(fileobj=BytesIO(self.layer_tars[layer_id]), mode="r") as tar:
            return tar.getnames()

    def layer_member(self, layer_id, name):
        with tarfile.open(fileobj=BytesIO(self.layer_tars[layer_id]), mode="r") as tar:
            return tar.getmember(name)

    def filesystem(self):
        """
        The filesystem a container created from the image would see:
        all layers applied in order, markers processed.
        """
        files = {}

        for layer_id in self.layers:
            with tarfile.open(
                fileobj=BytesIO(self.layer_tars[layer_id]), mode="r"
            ) as tar:
                members = tar.getmembers()

                for member in members:
                    name = posixpath.normpath(member.name)
                    base = posixpath.basename(name)
                    parent = posixpath.dirname(name)

                    if base == ".wh..wh..opq":
                        prefix = parent + "/" if parent else ""
                        for path in [p for p in files if p.startswith(prefix)]:
                            del files[path]
                    elif base.startswith(".wh."):
                        hidden = posixpath.join(parent, base[len(".wh.") :])
                        for path in [
                            p for p in files if p == hidden or p.startswith(hidden + "/")
                        ]:
                            del files[path]

                for member in members:
                    name = posixpath.normpath(member.name)

                    if posixpath.basename(name).startswith(".wh."):
                        continue

                    if member.isfile():
                        files[name] = ("file", tar.extractfile(member).read(), member.mode)
                    elif member.islnk():
                        target = tar.getmember(member.linkname)
                        files[name] = ("file", tar.extractfile(target).read(), target.mode)
                    elif member.issym():
                        files[name] = ("symlink", member.linkname)
                    elif member.isdir():
                        files[name] = ("dir", member.mode)

        return files
