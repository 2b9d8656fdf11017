#!/usr/bin/env python
# run_permanova.py

import argparse
import subprocess
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent
sys.path.append(str(project_root / 'tools'))

from calculus_tools import load_config


def main():
    """
    Run the CLR/Aitchison PERMANOVA on both read counts and protein intensities
    using the project configuration.
    """
    parser = argparse.ArgumentParser(description='Run CLR/Aitchison PERMANOVA on reads and proteins')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    args = parser.parse_args()

    print("Running PERMANOVA analysis...")

    config_file = args.config
    config = load_config(project_root / config_file)

    metadata_file = project_root / config['metadata']['filename']
    if not metadata_file.exists():
        print(f"Error: Metadata file not found: {metadata_file}")
        return 1

    status = 0
    for data_type in ["reads", "proteins"]:
        cmd = [
            sys.executable, str(project_root / "scripts" / "04_composition_pca.py"),
            "--config", config_file,
            "--data-type", data_type,
            "--categorical-vars", ",".join(config['metadata']['group_variables']),
            "--permutations", str(config['statistics']['permutations'])
        ]

        try:
            print(f"Executing: {' '.join(cmd)}")
            subprocess.run(cmd, check=True, cwd=project_root)
            print(f"PERMANOVA on {data_type} completed successfully")
        except subprocess.CalledProcessError as e:
            print(f"Error running PERMANOVA on {data_type}: {e}")
            status = 1

    return status


if __name__ == "__main__":
    sys.exit(main())
