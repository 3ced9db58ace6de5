"""
Reporting module for RepoCapsule.

Output formats:
    - Console: Rich terminal output with status icons and summary tables
    - JSON: Structured output for programmatic consumption

Example:
    from repocapsule.report import RichReporter, print_build_summary

    reporter = RichReporter(verbose=True)
    result = ArtifactBuilder(config, reporter).build()
    print_build_summary(reporter.console, result)
"""

from repocapsule.report.console import RichReporter, print_build_summary, print_run_summary
from repocapsule.report.json import build_result_to_dict, dumps, error_to_dict, run_result_to_dict

__all__ = [
    "RichReporter",
    "print_build_summary",
    "print_run_summary",
    "build_result_to_dict",
    "run_result_to_dict",
    "error_to_dict",
    "dumps",
]
