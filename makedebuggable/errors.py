class MakeDebuggableError(Exception):
    pass


# archive

class ArchiveError(MakeDebuggableError):
    pass


class ArchiveUnreadable(ArchiveError):
    pass


class EntryNotFound(ArchiveError):
    pass


class EntryReadError(ArchiveError):
    pass


class InvalidDestination(ArchiveError):
    pass


# binary xml

class DecodeError(MakeDebuggableError):
    pass


class MalformedPool(DecodeError):
    pass


class MalformedDocument(DecodeError):
    pass


class ElementNotFound(MakeDebuggableError):
    pass


# manifest

class ManifestError(MakeDebuggableError):
    def __init__(self, path, message):
        super().__init__("{} [{}]".format(message, path))
        self.path = path


class DocumentMissing(ManifestError):
    def __init__(self, path):
        super().__init__(path, "unable to find manifest in")


class DocumentMalformed(ManifestError):
    def __init__(self, path):
        super().__init__(path, "malformed manifest in")


class RequiredElementMissing(ManifestError):
    def __init__(self, path, element):
        super().__init__(path, "unable to find {} tag in".format(element))
        self.element = element


class SigningError(MakeDebuggableError):
    pass
