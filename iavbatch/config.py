"""
Configuration Management for IAVBatch

This module provides the configuration system using frozen dataclasses. A
single PipelineConfig is built once per run and handed to every stage; no
stage reads process-wide mutable state.

The configuration system supports:

1. Default parameter values matching the nanopore IAV workflow
2. Loading configuration from YAML/JSON files
3. Environment variable overrides
4. Validation in ``__post_init__``
5. Hierarchical configuration with component-specific settings

Configuration Structure:
- FilteringConfig: filtlong read-filtering parameters
- AssemblyConfig: IRMA consensus assembly parameters
- CladeConfig: nextclade reference collection and reference names
- PipelineConfig: Master configuration (batch, samples, concurrency)

Example Usage:
    >>> from iavbatch.config import get_default_config, load_config_from_file
    >>>
    >>> config = get_default_config()
    >>> print(config.filtering.min_length)
    500
    >>>
    >>> config = load_config_from_file("FOX01.yaml")
    >>> custom_config = config.update(
    ...     n_threads=4,
    ...     filtering__keep_percent=95,
    ... )
"""

from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Union
import os
import re
import json
import logging

import yaml

logger = logging.getLogger(__name__)


# Segment names in IRMA numbering order (<barcode>_1.fa .. <barcode>_8.fa)
SEGMENTS = ["PB2", "PB1", "PA", "HA", "NP", "NA", "MP", "NS"]

DEFAULT_REFERENCE_NAMES = {
    "HA": "A_HA_H9",
    "NA": "A_NA_N2",
    "PB1": "A_PB1",
    "NS": "A_NS",
    "PB2": "A_PB2",
    "PA": "A_PA",
    "NP": "A_NP",
    "MP": "A_MP",
}

BARCODE_PATTERN = re.compile(r"^barcode\d{2}$")


def _default_reference_fasta() -> Path:
    return (
        Path.home() / "miniconda3" / "bin" / "IRMA_RES" / "modules"
        / "FLU_ont" / "reference" / "consensus.fasta"
    )


# ============================================================================
# Read Filtering Configuration
# ============================================================================

@dataclass(frozen=True)
class FilteringConfig:
    """
    Configuration for filtlong read filtering.

    Attributes
    ----------
    min_length : int
        Minimum read length passed as ``--min_length`` (default: 500)

    max_length : Optional[int]
        Maximum read length passed as ``--max_length`` when set (default: None)

    min_quality : Optional[float]
        Minimum mean read quality passed as ``--min_mean_q`` when set
        (default: None)

    target_bases : int
        Total bases to keep, ``--target_bases`` (default: 100,000,000)

    keep_percent : float
        Percentage of best reads to keep, ``--keep_percent`` (default: 90)

    Notes
    -----
    max_length and min_quality are off by default so the standard filtlong
    invocation is ``--min_length --keep_percent --target_bases`` only.
    """
    min_length: int = 500
    max_length: Optional[int] = None
    min_quality: Optional[float] = None
    target_bases: int = 100_000_000
    keep_percent: float = 90

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.min_length < 1:
            raise ValueError("min_length must be at least 1")
        if self.max_length is not None and self.max_length < self.min_length:
            raise ValueError("max_length must be greater than or equal to min_length")
        if self.min_quality is not None and self.min_quality < 0:
            raise ValueError("min_quality must be non-negative")
        if self.target_bases < 1:
            raise ValueError("target_bases must be at least 1")
        if not 0 < self.keep_percent <= 100:
            raise ValueError("keep_percent must be between 0 and 100")


# ============================================================================
# Assembly Configuration
# ============================================================================

@dataclass(frozen=True)
class AssemblyConfig:
    """
    Configuration for IRMA consensus assembly.

    Attributes
    ----------
    module : str
        IRMA module / platform profile (default: "FLU_ont")
    """
    module: str = "FLU_ont"

    def __post_init__(self):
        if not self.module or not self.module.strip():
            raise ValueError("module must be a non-empty IRMA module name")


# ============================================================================
# Clade Analysis Configuration
# ============================================================================

@dataclass(frozen=True)
class CladeConfig:
    """
    Configuration for the nextclade clade-assignment stage.

    Attributes
    ----------
    reference_fasta : Path
        Multi-record reference collection the per-segment references are
        extracted from (default: IRMA's FLU_ont consensus.fasta under
        ~/miniconda3)

    reference_names : Dict[str, str]
        Segment -> reference record name

    run_clade_analysis : bool
        Whether the clade stage runs at all (default: True)
    """
    reference_fasta: Path = field(default_factory=_default_reference_fasta)
    reference_names: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_REFERENCE_NAMES)
    )
    run_clade_analysis: bool = True

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.reference_fasta, str):
            object.__setattr__(
                self, 'reference_fasta', Path(self.reference_fasta).expanduser()
            )

        unknown = sorted(set(self.reference_names) - set(SEGMENTS))
        if unknown:
            raise ValueError(f"Unknown segments in reference_names: {unknown}")
        missing = [s for s in SEGMENTS if s not in self.reference_names]
        if missing:
            raise ValueError(f"reference_names is missing segments: {missing}")


# ============================================================================
# Master Pipeline Configuration
# ============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Master configuration for the complete IAVBatch pipeline.

    Attributes
    ----------
    batch_id : str
        Batch name used in pooled file names and full-label headers

    sample_prefix : str
        Prefix of raw input files: ``{sample_prefix}_barcodeNN.bam``

    n_threads : int
        Concurrency limit for per-sample stages and nextclade ``--jobs``
        (default: 8)

    barcode_count : int
        Number of barcodes in the batch, barcode01..barcodeNN (default: 24)

    sample_labels : Dict[str, str]
        Barcode identifier -> sample label. Barcodes without an entry (or
        with a blank entry) are labelled with their identifier.

    work_dir : Path
        Directory holding raw inputs; all outputs are written beneath it

    log_level : str
        Logging level (default: "INFO")

    filtering : FilteringConfig
    assembly : AssemblyConfig
    clade : CladeConfig
    """
    batch_id: str = "batch"
    sample_prefix: str = ""
    n_threads: int = 8
    barcode_count: int = 24
    sample_labels: Dict[str, str] = field(default_factory=dict)
    work_dir: Path = field(default_factory=lambda: Path("."))
    log_level: str = "INFO"
    filtering: FilteringConfig = field(default_factory=FilteringConfig)
    assembly: AssemblyConfig = field(default_factory=AssemblyConfig)
    clade: CladeConfig = field(default_factory=CladeConfig)

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.work_dir, str):
            object.__setattr__(self, 'work_dir', Path(self.work_dir))

        if not self.batch_id or not str(self.batch_id).strip():
            raise ValueError("batch_id must be a non-empty string")
        if re.search(r"[/\s]", str(self.batch_id)):
            raise ValueError("batch_id must not contain whitespace or '/'")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")

        if self.n_threads < 1:
            raise ValueError("n_threads must be at least 1")

        if not 1 <= self.barcode_count <= 99:
            raise ValueError("barcode_count must be between 1 and 99")

        bad_keys = [k for k in self.sample_labels if not BARCODE_PATTERN.match(str(k))]
        if bad_keys:
            raise ValueError(
                f"sample_labels keys must look like 'barcode07', got: {bad_keys}"
            )

    def update(self, **kwargs) -> 'PipelineConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        config.update(filtering__min_length=1000)

        Parameters
        ----------
        **kwargs
            Configuration parameters to update. Use double underscore
            for nested parameters (e.g., clade__reference_fasta)

        Returns
        -------
        PipelineConfig
            New configuration object with updates
        """
        top_level = {}
        nested = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                nested.setdefault(component, {})[param] = value
            else:
                top_level[key] = value

        for component, updates in nested.items():
            current = top_level.get(component, getattr(self, component))
            top_level[component] = replace(current, **updates)

        return replace(self, **top_level)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a nested dictionary."""
        return asdict(self)

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """
        Save configuration to YAML file.

        Parameters
        ----------
        output_path : Union[str, Path]
            Output file path
        """
        config_dict = _convert_paths_to_strings(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Parameters
        ----------
        output_path : Union[str, Path]
            Output file path
        """
        config_dict = _convert_paths_to_strings(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")


# ============================================================================
# Helper Functions
# ============================================================================

def get_default_config() -> PipelineConfig:
    """Get default pipeline configuration."""
    return PipelineConfig()


def load_config_from_file(config_path: Union[str, Path]) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Automatically detects file format based on extension.

    Parameters
    ----------
    config_path : Union[str, Path]
        Path to configuration file (.yaml, .yml, or .json)

    Returns
    -------
    PipelineConfig
        Loaded configuration

    Raises
    ------
    FileNotFoundError
        If configuration file doesn't exist
    ValueError
        If file format is not supported or values are invalid

    Examples
    --------
    >>> config = load_config_from_file("FOX01.yaml")
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}
    elif suffix == '.json':
        with open(path, 'r') as f:
            config_dict = json.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}")

    if not isinstance(config_dict, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


def _dict_to_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """
    Convert dictionary to PipelineConfig object.

    Handles nested configuration structures and type conversions.
    """
    config_dict = _convert_strings_to_paths(dict(config_dict))

    nested_configs = {}

    if 'filtering' in config_dict:
        nested_configs['filtering'] = FilteringConfig(**config_dict.pop('filtering'))

    if 'assembly' in config_dict:
        nested_configs['assembly'] = AssemblyConfig(**config_dict.pop('assembly'))

    if 'clade' in config_dict:
        clade_dict = dict(config_dict.pop('clade'))
        # Partial reference_names override the defaults segment by segment
        if 'reference_names' in clade_dict:
            names = dict(DEFAULT_REFERENCE_NAMES)
            names.update(clade_dict['reference_names'] or {})
            clade_dict['reference_names'] = names
        nested_configs['clade'] = CladeConfig(**clade_dict)

    if config_dict.get('sample_labels') is None:
        config_dict.pop('sample_labels', None)
    else:
        config_dict['sample_labels'] = {
            str(k): "" if v is None else str(v)
            for k, v in config_dict['sample_labels'].items()
        }

    if 'batch_id' in config_dict:
        config_dict['batch_id'] = str(config_dict['batch_id'])
    if config_dict.get('sample_prefix') is None:
        config_dict.pop('sample_prefix', None)
    else:
        config_dict['sample_prefix'] = str(config_dict['sample_prefix'])

    return PipelineConfig(**nested_configs, **config_dict)


def _convert_paths_to_strings(obj: Any) -> Any:
    """Recursively convert Path objects to strings for serialization."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _convert_paths_to_strings(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_convert_paths_to_strings(item) for item in obj]
    elif isinstance(obj, tuple):
        return tuple(_convert_paths_to_strings(item) for item in obj)
    else:
        return obj


def _convert_strings_to_paths(obj: Any) -> Any:
    """Recursively convert path strings back to Path objects."""
    if isinstance(obj, dict):
        path_fields = ['reference_fasta', 'work_dir']

        result = {}
        for k, v in obj.items():
            if k in path_fields and v is not None:
                result[k] = Path(v).expanduser()
            else:
                result[k] = _convert_strings_to_paths(v)
        return result
    elif isinstance(obj, list):
        return [_convert_strings_to_paths(item) for item in obj]
    else:
        return obj


def load_config_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables should be prefixed with IAVBATCH_ and use double
    underscores for nesting:

    IAVBATCH_N_THREADS=4
    IAVBATCH_FILTERING__MIN_LENGTH=800

    Returns
    -------
    Dict[str, Any]
        Configuration overrides suitable for PipelineConfig.update()
    """
    prefix = "IAVBATCH_"
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            overrides[config_key] = _parse_env_value(value)

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def validate_config(config: PipelineConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Checks for common issues like missing files and unusual parameter values.

    Parameters
    ----------
    config : PipelineConfig
        Configuration to validate

    Returns
    -------
    List[str]
        List of warning messages (empty if no issues)
    """
    warnings = []

    if not config.work_dir.exists():
        warnings.append(f"Working directory not found: {config.work_dir}")

    if not config.sample_prefix:
        warnings.append(
            "sample_prefix is empty; raw inputs are expected as _barcodeNN.bam / _barcodeNN.fastq"
        )

    if config.clade.run_clade_analysis and not config.clade.reference_fasta.exists():
        warnings.append(
            f"Reference collection not found: {config.clade.reference_fasta}. "
            "The clade analysis stage will fail."
        )

    cpu_count = os.cpu_count() or 1
    if config.n_threads > cpu_count:
        warnings.append(
            f"Thread count ({config.n_threads}) exceeds available CPUs ({cpu_count})"
        )

    out_of_range = sorted(
        k for k in config.sample_labels
        if int(k[len("barcode"):]) > config.barcode_count
        or int(k[len("barcode"):]) < 1
    )
    if out_of_range:
        warnings.append(
            f"sample_labels entries outside barcode01..barcode{config.barcode_count:02d} "
            f"are ignored: {out_of_range}"
        )

    if config.filtering.keep_percent < 50:
        warnings.append(
            f"keep_percent ({config.filtering.keep_percent}) discards most reads"
        )

    return warnings


# ============================================================================
# Configuration Templates
# ============================================================================

def create_config_template(output_path: Union[str, Path], format: str = "yaml") -> None:
    """
    Create a configuration template file.

    The template lists every barcode with an empty sample label so it can be
    filled in for a new batch.

    Parameters
    ----------
    output_path : Union[str, Path]
        Output file path
    format : str
        File format: "yaml" or "json" (default: "yaml")
    """
    config = get_default_config()
    config = config.update(
        sample_labels={
            f"barcode{n:02d}": "" for n in range(1, config.barcode_count + 1)
        }
    )

    if format.lower() == "yaml":
        config.to_yaml(output_path)
    elif format.lower() == "json":
        config.to_json(output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    logger.info(f"Created configuration template: {output_path}")
