#!/usr/bin/env python3
"""
Error types for the bulk RNA-seq DE / enrichment pipeline

Fatal errors abort the run and name the stage that failed.
Non-fatal conditions are warnings that get recorded in the run summary.
"""


class PipelineError(Exception):
    """Base class for fatal pipeline errors"""

    stage = "pipeline"

    def __init__(self, message, stage=None):
        if stage is not None:
            self.stage = stage
        self.message = message
        super().__init__(f"[{self.stage}] {message}")


class ParseError(PipelineError):
    """Malformed input file"""

    stage = "load"


class SchemaError(PipelineError):
    """Sample identifiers of counts and metadata do not line up"""

    stage = "load"


class EmptyFilterResult(PipelineError):
    """No gene survived the expression filter"""

    stage = "filter"


class NormalizationError(PipelineError):
    """Normalization factors could not be estimated"""

    stage = "filter"


class FitConvergenceError(PipelineError):
    """The negative binomial model could not be fitted for the design/contrast"""

    stage = "differential_expression"


class GeneSetLoadError(PipelineError):
    """No gene set collection could be obtained"""

    stage = "enrichment"


class PipelineWarning(UserWarning):
    """Base class for non-fatal conditions recorded in the run summary"""

    stage = "pipeline"

    def as_record(self):
        return {"kind": type(self).__name__, "stage": self.stage, "message": str(self)}


class AnnotationGap(PipelineWarning):
    """Some genes have no symbol / secondary identifier"""

    stage = "annotation"


class EmptyEnrichmentResult(PipelineWarning):
    """No gene set passes the significance threshold"""

    stage = "enrichment"
