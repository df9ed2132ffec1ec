"""Analysis services: factors, designs, contrasts, model fitting and filtering."""

from factorial_de.services.analysis.contrast_service import ContrastService
from factorial_de.services.analysis.design_matrix_service import DesignMatrixService
from factorial_de.services.analysis.differential_expression_service import (
    DifferentialExpressionService,
)
from factorial_de.services.analysis.factor_encoding_service import (
    FactorEncodingService,
)
from factorial_de.services.analysis.result_filter_service import ResultFilterService
from factorial_de.services.analysis.statistics_backend import (
    DispersionModel,
    FittedModel,
    StatisticsBackend,
)

__all__ = [
    "FactorEncodingService",
    "DesignMatrixService",
    "ContrastService",
    "ResultFilterService",
    "StatisticsBackend",
    "DispersionModel",
    "FittedModel",
    "DifferentialExpressionService",
]
