# -*- coding: utf-8 -*-

import os
import sys
from logging import Logger
from typing import BinaryIO, Optional, Union

from export_squash.errors import ArchiveIOError, SquashError
from export_squash.export import Export
from export_squash.layer import SHORT_ID_LENGTH
from export_squash.lib.common import parse_tag
from export_squash.lifecycle import TempDirGuard
from export_squash.version import version


class Squash(object):
    def __init__(
        self,
        log,
        input: Union[str, BinaryIO, None],
        output: Union[str, BinaryIO, None] = None,
        from_layer: Optional[str] = None,
        tag: Optional[str] = None,
        tmp_dir: Optional[str] = None,
    ):
        self.log: Logger = log
        self.input = input
        """ Path to the export archive or a binary stream to read it from """
        self.output = output
        """ Path or binary stream for the squashed export, stdout if not provided """
        self.from_layer: Optional[str] = from_layer
        self.tag: Optional[str] = tag
        self.tmp_dir: Optional[str] = tmp_dir
        self.repository: Optional[str] = None
        self.image_tag: Optional[str] = None

    def run(self) -> str:
        self.log.info("export-squash version %s..." % version)

        if self.input is None:
            raise SquashError("Export archive is not provided")

        # Fail early, before anything is unpacked
        if self.tag:
            self.repository, self.image_tag = parse_tag(self.tag)

        if isinstance(self.output, str) and os.path.exists(self.output):
            self.log.warning(
                "Path '%s' specified as output path where the squashed export should be saved already exists, it'll be overriden"
                % self.output
            )

        with TempDirGuard(self.log, self.tmp_dir) as tmp_dir:
            return self.squash(tmp_dir)

    def squash(self, workdir: str) -> str:
        export = Export.load(self.log, self.input, workdir)
        export.check_single_branch()

        start = export.resolve_start(self.from_layer)
        self.log.info("Squashing from layer %s" % start.id[:SHORT_ID_LENGTH])

        # Extract each "layer.tar" to the "layer" directory
        export.extract_layers()

        squashed = start

        if export.child_of(start.id) is None:
            self.log.info(
                "Layer %s is the last layer, no squashing is required"
                % start.id[:SHORT_ID_LENGTH]
            )
        else:
            # Insert a new layer after our squash point...
            new_layer = export.insert_layer(start.id)
            self.log.debug(
                "Inserted new layer %s after %s"
                % (new_layer.id[:SHORT_ID_LENGTH], start.id[:SHORT_ID_LENGTH])
            )
            self._log_history(export, new_layer.id)

            # ...and squash all later layers into it
            squashed = export.squash_layers(new_layer)

            self.log.debug(
                "Tarring up squashed layer %s" % squashed.id[:SHORT_ID_LENGTH]
            )
            squashed.tar_layer(self.log)

        self.log.debug("Removing extracted layers")
        export.remove_extracted_layers()

        last = export.last_child()

        if self.repository:
            self.log.info(
                "Tagging %s as %s:%s"
                % (last.id[:SHORT_ID_LENGTH], self.repository, self.image_tag)
            )
            export.tag(self.repository, self.image_tag, last.id)

        self._write(export)

        self.log.info("Done. New image created.")
        self._log_history(export, squashed.id)

        return last.id

    def _write(self, export: Export):
        if self.output is None:
            self.log.debug("Tarring new image to STDOUT")
            export.write(sys.stdout.buffer)
            sys.stdout.buffer.flush()
        elif isinstance(self.output, str):
            self.log.debug("Tarring new image to %s" % self.output)
            try:
                with open(self.output, "wb") as f:
                    export.write(f)
            except OSError as e:
                raise ArchiveIOError(
                    f"Could not write the squashed export to {self.output}: {e}"
                )
        else:
            self.log.debug("Tarring new image to the output stream")
            export.write(self.output)

    def _log_history(self, export: Export, squashed: str):
        for entry in export.history(squashed):
            self.log.debug(
                "  %s %s %s"
                % (
                    "->" if entry.squashed else "- ",
                    entry.id[:SHORT_ID_LENGTH],
                    entry.command,
                )
            )
