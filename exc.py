class ApplicationError(Exception):
    pass


class ProviderError(ApplicationError):
    pass


class DecodeError(ApplicationError):
    pass


class MissingNamespaceError(ApplicationError):
    pass


class SerializationError(ApplicationError):
    pass
