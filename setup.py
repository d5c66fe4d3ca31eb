#!/usr/bin/env python3

from setuptools import setup, find_packages

setup(
    name='ClusterAtlas',
    version='0.1.0',
    description='Single-cell RNA-seq pipeline for QC, doublet removal, integration, annotation and reference-based cell type classification',
    author='ClusterAtlas developers',
    author_email='',
    license='GPL-3.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    package_data={
        'snakemake_wrapper': ['Snakefile', 'scripts/*'],
    },
    entry_points={
        'console_scripts': [
            'ClusterAtlas=cli.cli:main',
        ],
    },
    install_requires=[
        'click',
        'snakemake>=7.0',
        'pyyaml',
        'pandas',
        'numpy',
        'scipy',
        'anndata',
        'scanpy>=1.10',
        'matplotlib',
        'scikit-learn',
        'statsmodels',
        'scanorama',
        'leidenalg',
        'igraph',
    ],
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.9',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Natural Language :: English',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Bio-Informatics',
    ],
    keywords='single-cell rna-seq doublets integration clustering cell-type-annotation bioinformatics',
)
