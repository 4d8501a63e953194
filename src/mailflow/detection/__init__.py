"""Financial suggestion detection.

AI extraction of payments and expenses from documents, a keyword heuristic
used when the AI service is unavailable, and the detector that applies
confidence thresholds and duplicate checks before storing suggestions.
"""

from mailflow.detection.ai_analyzer import FinancialAnalyzer, FinancialExtraction, is_analyzable
from mailflow.detection.financial import CONFIDENCE_THRESHOLDS, FinancialSuggestionDetector
from mailflow.detection.heuristics import HeuristicAnalyzer

__all__ = [
    "CONFIDENCE_THRESHOLDS",
    "FinancialAnalyzer",
    "FinancialExtraction",
    "FinancialSuggestionDetector",
    "HeuristicAnalyzer",
    "is_analyzable",
]
