from gridmatch import errors
from gridmatch.api import GridMatch, PipelineModel, apply_match_grid, match_grid
from gridmatch.config import MatchGridConfig, parse_match_grid_config

__all__ = [
    "errors",
    "GridMatch",
    "MatchGridConfig",
    "PipelineModel",
    "apply_match_grid",
    "match_grid",
    "parse_match_grid_config",
]
