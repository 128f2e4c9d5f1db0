# Emerald's Killfeed - Parsers
# Parser module exports
from .line_splitter import split_lines
from .record_parser import parse_line, parse_log_line
from .classifier import EventClassifier, classify

__all__ = ['split_lines', 'parse_line', 'parse_log_line', 'EventClassifier', 'classify']
