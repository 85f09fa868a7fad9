# -*- coding: utf-8 -*-

import argparse
import logging
import sys

from export_squash import squash
from export_squash.errors import SquashError
from export_squash.version import version


# Source: http://stackoverflow.com/questions/1383254/logging-streamhandler-and-standard-streams
class SingleLevelFilter(logging.Filter):
    def __init__(self, passlevel, reject):
        self.passlevel = passlevel
        self.reject = reject

    def filter(self, record):
        if self.reject:
            return record.levelno != self.passlevel
        else:
            return record.levelno == self.passlevel


class MyParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_help()
        sys.stderr.write("\nError: %s\n" % message)
        sys.exit(2)


class CLI(object):
    def __init__(self):
        self.log = logging.getLogger()
        self.formatter = logging.Formatter(
            "%(asctime)s %(filename)s:%(lineno)-10s %(levelname)-5s %(message)s"
        )

    def _setup_logging(self, stdout_free: bool):
        handler_err = logging.StreamHandler(sys.stderr)
        handler_err.setFormatter(self.formatter)

        # When the squashed export is written to stdout all messages go to stderr
        if stdout_free:
            handler_out = logging.StreamHandler(sys.stdout)
            handler_out.addFilter(SingleLevelFilter(logging.INFO, False))
            handler_err.addFilter(SingleLevelFilter(logging.INFO, True))
            handler_out.setFormatter(self.formatter)
            self.log.addHandler(handler_out)

        self.log.addHandler(handler_err)

    def run(self, argv=None):
        parser = MyParser(description="Docker image export squashing tool")

        parser.add_argument(
            "-v", "--verbose", action="store_true", help="Verbose output"
        )

        parser.add_argument(
            "--version", action="version", help="Show version and exit", version=version
        )

        parser.add_argument(
            "-i",
            "--input",
            required=True,
            help="Path to the tar archive created by 'docker save', '-' to read it from standard input",
        )
        parser.add_argument(
            "-o",
            "--output",
            help="Path where the squashed export should be stored, standard output is used if not provided",
        )
        parser.add_argument(
            "-f",
            "--from-layer",
            help="ID of the layer to squash from, or 'root' to squash all layers. By default the layer created by a previous squash is used, then the layer adding the base image and finally the root layer.",
        )
        parser.add_argument(
            "-t",
            "--tag",
            help="Repository and tag ('repository[:tag]') to be set for the squashed image",
        )
        parser.add_argument(
            "--tmp-dir",
            help="Temporary directory to be created and used. This will NOT be deleted afterwards for easier debugging.",
        )

        args = parser.parse_args(argv)

        self._setup_logging(stdout_free=bool(args.output))

        if args.verbose:
            self.log.setLevel(logging.DEBUG)
        else:
            self.log.setLevel(logging.INFO)

        self.log.debug("Running version %s", version)

        source = args.input

        if source == "-":
            source = sys.stdin.buffer

        try:
            squash.Squash(
                log=self.log,
                input=source,
                output=args.output,
                from_layer=args.from_layer,
                tag=args.tag,
                tmp_dir=args.tmp_dir,
            ).run()
        except KeyboardInterrupt:
            self.log.error("Program interrupted by user, exiting...")
            sys.exit(1)
        except Exception:
            e = sys.exc_info()[1]

            if args.verbose:
                self.log.exception(e)
            else:
                self.log.error(str(e))

            self.log.error("Execution failed, consult logs above.")

            if isinstance(e, SquashError):
                sys.exit(e.code)

            sys.exit(1)


def run():
    cli = CLI()
    cli.run()


if __name__ == "__main__":
    run()
