"""Exception hierarchy shared by the detection pipeline and its collaborators.

``ValidationError`` is the only error callers of ``SiteAnalyzer.analyze`` see.
``ResourceUnavailable`` and ``DataGap`` are raised internally and recovered
where they occur (placeholder models, fallback detection, empty layers).
"""


class SitewatchError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ValidationError(SitewatchError, ValueError):
    pass


class ResourceUnavailable(SitewatchError):
    def __init__(self, message: str, resource: str = ""):
        super().__init__(message)
        self.resource = resource


class DataGap(SitewatchError):
    def __init__(self, message: str, layer: str = ""):
        super().__init__(message)
        self.layer = layer
