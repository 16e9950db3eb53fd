from gridmatch.api.match_grid import GridMatch, PipelineModel, apply_match_grid, match_grid

__all__ = [
    "GridMatch",
    "PipelineModel",
    "apply_match_grid",
    "match_grid",
]
