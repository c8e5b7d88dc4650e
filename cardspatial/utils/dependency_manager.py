"""
cardspatial dependency manager.

Detects optional dependencies and produces clear errors for the features
that need them. Core libraries are imported directly by the modules that
use them; only the optional R bridge is routed through here.
"""

import importlib
import logging
import sys
from dataclasses import dataclass, field
from importlib import metadata
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import DependencyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyInfo:
    """Information about a dependency"""

    name: str
    import_name: str
    install_command: str
    description: str
    is_critical: bool = False
    alternatives: List[str] = field(default_factory=list)


CRITICAL_DEPS: Dict[str, DependencyInfo] = {
    dep.name: dep
    for dep in [
        DependencyInfo(
            "numpy", "numpy", "pip install numpy", "Core numerical computing", True
        ),
        DependencyInfo(
            "pandas", "pandas", "pip install pandas", "Data manipulation", True
        ),
        DependencyInfo(
            "scipy", "scipy", "pip install scipy", "Sparse matrices and NNLS", True
        ),
        DependencyInfo(
            "anndata", "anndata", "pip install anndata", "Annotated data matrices", True
        ),
        DependencyInfo(
            "scanpy", "scanpy", "pip install scanpy", "Single-cell analysis toolkit", True
        ),
        DependencyInfo(
            "squidpy",
            "squidpy",
            "pip install squidpy",
            "Spatial neighbors and Moran's I",
            True,
        ),
        DependencyInfo(
            "matplotlib", "matplotlib", "pip install matplotlib", "Plotting", True
        ),
        DependencyInfo(
            "seaborn", "seaborn", "pip install seaborn", "Color palettes", True
        ),
    ]
}

OPTIONAL_DEPS: Dict[str, DependencyInfo] = {
    dep.name: dep
    for dep in [
        DependencyInfo(
            "rpy2",
            "rpy2",
            "pip install 'cardspatial[r]' (requires an R installation)",
            "R interface used by the CARD engine",
            alternatives=["nnls"],
        ),
        DependencyInfo(
            "anndata2ri",
            "anndata2ri",
            "pip install 'cardspatial[r]'",
            "AnnData/SingleCellExperiment conversion for rpy2",
            alternatives=["nnls"],
        ),
    ]
}

# R packages looked up through rpy2, not importable from Python
R_PACKAGES: Dict[str, str] = {
    "CARD": "devtools::install_github('YingMa0107/CARD')",
}


def _get_dependency_info(dep_name: str) -> Optional[DependencyInfo]:
    return CRITICAL_DEPS.get(dep_name) or OPTIONAL_DEPS.get(dep_name)


def check_dependency(dep_name: str) -> Tuple[bool, Optional[str]]:
    """
    Check if a dependency is importable.

    Returns:
        (is_available, version_or_error)
    """
    dep_info = _get_dependency_info(dep_name)
    import_name = dep_info.import_name if dep_info else dep_name
    try:
        module = importlib.import_module(import_name)
    except ImportError as e:
        return False, f"Import failed: {e}"

    version = getattr(module, "__version__", None)
    if version is None:
        try:
            version = metadata.version(dep_info.name if dep_info else dep_name)
        except metadata.PackageNotFoundError:
            version = "unknown"
    return True, str(version)


def is_available(dep_name: str) -> bool:
    """Convenience function to check if a dependency is available"""
    return check_dependency(dep_name)[0]


def require(dep_name: str, feature: Optional[str] = None) -> Any:
    """
    Require a dependency and return the imported module.

    Raises:
        DependencyError: If dependency is not available
    """
    available, error = check_dependency(dep_name)
    if not available:
        dep_info = _get_dependency_info(dep_name)
        install_cmd = dep_info.install_command if dep_info else f"pip install {dep_name}"
        message = (
            f"Missing dependency '{dep_name}' for feature '{feature or dep_name}'. "
            f"Install with: {install_cmd}"
        )
        if dep_info and dep_info.alternatives:
            message += f" Alternatives: {', '.join(dep_info.alternatives)}"
        raise DependencyError(message)
    dep_info = _get_dependency_info(dep_name)
    return importlib.import_module(dep_info.import_name if dep_info else dep_name)


def is_r_package_available(package: str) -> bool:
    """Check whether an R package is installed (False when rpy2 is missing)."""
    if not is_available("rpy2"):
        return False
    try:
        from rpy2.robjects.packages import isinstalled

        return bool(isinstalled(package))
    except Exception as e:  # R itself may be missing or broken
        logger.debug(f"R package check for {package} failed: {e}")
        return False


def get_dependency_report() -> Dict[str, Any]:
    """Generate a dependency report"""
    report: Dict[str, Any] = {
        "python_version": (
            f"{sys.version_info.major}.{sys.version_info.minor}."
            f"{sys.version_info.micro}"
        ),
        "critical_dependencies": {},
        "optional_dependencies": {},
        "r_packages": {},
        "missing_critical": [],
        "missing_optional": [],
    }

    for dep_name in CRITICAL_DEPS:
        available, version_or_error = check_dependency(dep_name)
        report["critical_dependencies"][dep_name] = {
            "available": available,
            "version_or_error": version_or_error,
        }
        if not available:
            report["missing_critical"].append(dep_name)

    for dep_name in OPTIONAL_DEPS:
        available, version_or_error = check_dependency(dep_name)
        report["optional_dependencies"][dep_name] = {
            "available": available,
            "version_or_error": version_or_error,
        }
        if not available:
            report["missing_optional"].append(dep_name)

    for package, install_cmd in R_PACKAGES.items():
        report["r_packages"][package] = {
            "available": is_r_package_available(package),
            "install_command": install_cmd,
        }

    return report
