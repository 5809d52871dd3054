"""
Pipeline Configuration
======================

Two configuration layers:

1. Runtime settings (``Settings``) read from environment variables / ``.env``
   with the ``COHORT_DE_`` prefix: logging, annotation service, plotting.
2. Analysis configuration read from a YAML file and merged over
   ``DEFAULT_CONFIG``: input paths, column names, thresholds and the list of
   model variants. Every statistical threshold lives here, none are hard-coded
   in the stages.
"""
import copy
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables"""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Gene annotation (optional enrichment)
    ANNOTATION_ENABLED: bool = True
    ANNOTATION_SPECIES: str = "human"
    ANNOTATION_SCOPES: str = "ensembl.gene,symbol"
    ANNOTATION_BATCH_SIZE: int = 1000

    # Exploratory plots
    RENDER_PLOTS: bool = True
    PLOT_DPI: int = 150

    class Config:
        env_prefix = "COHORT_DE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


CBC_COLUMNS = [
    'wbc', 'hgb', 'hct', 'plt',
    'neut_abs', 'lymph_abs', 'mono_abs', 'eos_abs', 'baso_abs',
    'neut_pct', 'lymph_pct', 'mono_pct', 'eos_pct', 'baso_pct',
]

DEFAULT_CONFIG: Dict[str, Any] = {
    'project': {
        'name': 'rv_exacerbation_blood_rnaseq',
    },
    'data': {
        'counts': 'data/raw/counts.tsv',
        'metadata': 'data/raw/metadata.csv',
        'output_dir': 'results',
    },
    'columns': {
        'patient': 'patient_id',
        'status': 'status',
        'rhinovirus': 'rhinovirus',
        'cbc': list(CBC_COLUMNS),
    },
    'status_labels': {
        'exacerbation': ['exacerbation', 'exac', 'e'],
        'baseline': ['baseline', 'base', 'b'],
    },
    'rhinovirus_labels': {
        'positive': ['positive', 'pos', 'yes', '1', 'true'],
        'negative': ['negative', 'neg', 'no', '0', 'false'],
    },
    'filtering': {
        'min_log_cpm': -2.5,
        'min_samples': 4,
    },
    'normalization': {
        'logratio_trim': 0.3,
        'sum_trim': 0.05,
        'prior_count': 2,
    },
    'dispersion': {
        'formula': '~ patient + status',
        'prior_df': 10,
        'span': 0.3,
    },
    'exploration': {
        'top_genes': 20,
        'n_components': 5,
        'adjust_for': ['patient'],
        'preserve_formula': '~ status',
    },
    'screening': {
        'outcome': 'status',
        'candidates': list(CBC_COLUMNS),
        'deviance_threshold': 1.0,
    },
    'de_analysis': {
        'weighting': 'voom',
        'voom_span': 0.5,
        'proportion': 0.01,
        'trend': False,
        'thresholds': {
            'padj': 0.05,
            'log2fc': 0.0,
        },
        'surrogate_variables': {
            'n_permutations': 20,
            'random_state': 42,
        },
    },
    'models': [
        {
            'name': 'status_blocked',
            'formula': '~ 0 + status',
            'block': 'patient',
            'contrasts': {
                'exacerbation_vs_baseline': 'statusexacerbation - statusbaseline',
            },
        },
        {
            'name': 'paired',
            'formula': '~ patient + status',
            'contrasts': {
                'exacerbation_vs_baseline': 'statusexacerbation',
            },
        },
        {
            'name': 'status_by_rhinovirus',
            'formula': '~ 0 + status:rhinovirus',
            'block': 'patient',
            'contrasts': {
                'exacerbation_vs_baseline_rv_positive':
                    'statusexacerbation_rhinoviruspositive - statusbaseline_rhinoviruspositive',
                'exacerbation_vs_baseline_rv_negative':
                    'statusexacerbation_rhinovirusnegative - statusbaseline_rhinovirusnegative',
                'rv_interaction':
                    '(statusexacerbation_rhinoviruspositive - statusbaseline_rhinoviruspositive)'
                    ' - (statusexacerbation_rhinovirusnegative - statusbaseline_rhinovirusnegative)',
            },
        },
        {
            'name': 'paired_cbc',
            'formula': '~ patient + status',
            'covariates': ['hgb', 'plt'],
            'contrasts': {
                'exacerbation_vs_baseline': 'statusexacerbation',
            },
        },
        {
            'name': 'paired_sva',
            'formula': '~ patient + status',
            'null_formula': '~ patient',
            'surrogate_variables': 'auto',
            'contrasts': {
                'exacerbation_vs_baseline': 'statusexacerbation',
            },
        },
    ],
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``. Lists are replaced."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the analysis configuration.

    Parameters
    ----------
    config_path : str, optional
        Path to a YAML file. Missing keys fall back to ``DEFAULT_CONFIG``.

    Returns
    -------
    dict
        Merged configuration
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration root must be a mapping: {config_path}")

    return _deep_merge(DEFAULT_CONFIG, user_config)


def resolve_path(config: Dict[str, Any], key: str, root: Path) -> Path:
    """Resolve ``config['data'][key]`` relative to ``root`` unless absolute."""
    path = Path(config['data'][key])
    if not path.is_absolute():
        path = root / path
    return path
