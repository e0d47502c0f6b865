"""Pipeline orchestration and in-process event dispatch."""
