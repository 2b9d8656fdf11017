"""
Configuration loading for the dental calculus analyses.

Settings live in ``config/analysis_parameters.yml``; anything missing from the
file falls back to ``DEFAULT_CONFIG``.
"""

import copy
import os

import yaml

from .logger import log_print


DEFAULT_CONFIG = {
    'metadata': {
        'filename': 'data/metadata.csv',
        'sample_id_column': 'SampleID',
        'individual_column': 'Individual',
        'protocol_column': 'Protocol',
        'group_variables': ['Protocol'],
        'exclude_individuals': [],
    },
    'cleaning': {
        # Library, lane and run suffixes appended by the sequencing and MS facilities
        'sample_suffix_patterns': [
            r'_S\d+(_L\d{3})?(_R[12])?(_001)?$',
            r'\.SG\d+(\.\d+)?$',
            r'\.A\d{4}$',
            r'_(rep|run)\d+$',
        ],
        'contaminant_taxa_file': None,
        'contaminant_taxa': [],
        'decoy_prefixes': ['REV__'],
        'contaminant_prefixes': ['CON__'],
        'flag_columns': ['Reverse', 'Potential contaminant', 'Only identified by site'],
    },
    'reads': {
        'filename': 'data/malt_read_counts.tsv',
        'taxon_column': None,
        'min_prevalence': 0.1,
        'min_abundance': 0.01,
        'top_n': 20,
    },
    'alignment': {
        'filename': 'data/alignment_summary.csv',
        'sample_column': 'Sample',
        'metrics': ['endogenous_pct', 'mean_fragment_length', 'damage_5p_CtoT', 'duplication_rate'],
    },
    'proteomics': {
        'protein_file': 'data/proteinGroups.txt',
        'peptide_file': 'data/peptides.txt',
        'id_column': 'Protein IDs',
        'peptide_id_column': 'Sequence',
        'peptide_protein_column': 'Proteins',
        'intensity_prefix': 'Intensity ',
        'gravy_file': None,
        'gravy_id_column': 'Accession',
        'gravy_score_column': 'GRAVY',
        'go_annotation_file': None,
        'go_obo_file': None,
        'go_protein_column': 'protein',
        'go_term_column': 'go_term',
        'go_namespace': 'biological_process',
        'go_level': 2,
        'go_target_terms': [],
    },
    'statistics': {
        'p_adjust_method': 'fdr_bh',
        'alpha': 0.05,
        'permutations': 999,
        'pseudocount': 1e-5,
        'random_seed': 42,
        'reference_protocol': None,
    },
    'visualization': {
        'figure_dpi': 300,
        'figure_format': 'pdf',
        'palette': 'Set2',
    },
    'output': {
        'results_dir': 'results',
    },
}


def _merge(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path=None):
    """
    Load the analysis configuration.
    
    Parameters:
    -----------
    config_path : str or Path, optional
        Path to a YAML configuration file
        
    Returns:
    --------
    dict
        Configuration with file values merged over the defaults
    """
    if config_path is None or not os.path.exists(config_path):
        if config_path is not None:
            log_print(f"Config file not found at {config_path}, using default parameters", level="warning")
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, 'r') as f:
        file_config = yaml.safe_load(f)

    if file_config is not None and not isinstance(file_config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping at the top level")

    return _merge(DEFAULT_CONFIG, file_config)
