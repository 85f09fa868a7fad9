class Error(Exception):
    pass


class SquashError(Error):
    code = 1


class FormatError(SquashError):
    pass


class NotFoundError(SquashError):
    pass


class ArchiveIOError(SquashError):
    pass


class ValidationError(SquashError):
    code = 2
