"""Error types raised by the pipeline stages."""


class PipelineError(RuntimeError):
    """Base error. Carries the stage that failed and what triggered it."""

    stage = "pipeline"

    def __init__(self, detail, stage=None):
        if stage is not None:
            self.stage = stage
        super().__init__(f"[{self.stage}] {detail}")
        self.detail = detail


# Fetch errors

class FetchError(PipelineError):
    stage = "fetch"


class TaxonNotFoundError(FetchError):
    pass


class AmbiguousTaxonError(FetchError):
    """Name resolution returned several candidates; needs human review."""

    def __init__(self, name, candidates):
        self.name = name
        self.candidates = list(candidates)
        super().__init__(
            f"'{name}' matches several taxa {self.candidates}; pick one taxon key explicitly"
        )


# Geometric errors

class GeometryError(PipelineError):
    stage = "geometry"


class EmptyRangeError(GeometryError):
    pass


class CRSMismatchError(GeometryError):

    def __init__(self, expected, found, layer=None):
        self.expected = expected
        self.found = found
        self.layer = layer
        where = f" for layer {layer}" if layer else ""
        super().__init__(f"CRS mismatch{where}: expected {expected}, found {found}", stage="climate")


# Resampling / alignment errors

class AlignmentError(PipelineError):
    stage = "climate"
