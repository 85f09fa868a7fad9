# -*- coding: utf-8 -*-

import datetime
import hashlib
import json
import os
import re
import tarfile
from typing import Tuple

from export_squash.errors import ValidationError


class Chdir(object):
    """Context manager for changing the current working directory"""

    def __init__(self, new_path):
        self.newPath = os.path.expanduser(new_path)

    def __enter__(self):
        self.savedPath = os.getcwd()
        os.chdir(self.newPath)

    def __exit__(self, etype, value, traceback):
        os.chdir(self.savedPath)


def parse_tag(value: str) -> Tuple[str, str]:
    """
    Splits the provided 'repository[:tag]' string in the
    repository and tag part. If no tag is provided 'latest' is used.

    A colon followed by a slash belongs to the registry host
    ('localhost:5000/app'), not to the tag.
    """
    if ":" in value and "/" not in value.split(":")[-1]:
        tag = value.split(":")[-1]
        repository = value[: -(len(tag) + 1)]

        if not repository or not tag:
            raise ValidationError(f"Bad tag format: {value}")
    else:
        tag = "latest"
        repository = value

    if not repository:
        raise ValidationError(f"Bad tag format: {value}")

    return repository, tag


def normalize_path(path: str) -> str:
    return os.path.normpath(os.path.join("/", path))


def current_date() -> str:
    # Golang doesn't add padding to microseconds when marshaling
    # dates into JSON, Python does. Strip the trailing zeros to
    # produce the same output Docker does.
    return re.sub(
        r"0*Z$",
        "Z",
        datetime.datetime.now(datetime.timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%S.%fZ"
        ),
    )


def dump_json(data, new_line: bool = False) -> str:
    """Marshals object into compact JSON, the way Docker writes it"""

    json_data = json.dumps(data, separators=(",", ":"))

    if new_line:
        json_data = "%s\n" % json_data

    return json_data


def layer_id_from(seed: str) -> str:
    """
    Derives a layer ID from the seed. Docker refuses IDs which
    shortened to 10 characters parse as an integer, such IDs are
    hashed again until a valid one is found.
    """
    layer_id = hashlib.sha256(seed.encode("utf8")).hexdigest()

    while True:
        try:
            int(layer_id[0:10])
        except ValueError:
            return layer_id

        layer_id = hashlib.sha256(layer_id.encode("utf8")).hexdigest()


def extract_filter(trusted: bool) -> dict:
    """
    Keyword arguments selecting the tarfile extraction filter, on
    interpreters that support filters. Layer archives are extracted
    fully trusted, since permissions, special files and absolute
    symlinks have to be preserved as they are.
    """
    if not hasattr(tarfile, "data_filter"):
        return {}

    return {"filter": "fully_trusted" if trusted else "data"}
