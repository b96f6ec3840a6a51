from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else "BanksyScope: spatially-aware clustering grids for spatial transcriptomics."

setup(
	name="BanksyScope",
	version="0.1.0",
	description="BANKSY neighborhood features, parameter-grid clustering, label harmonization and comparison",
	long_description=readme,
	long_description_content_type="text/markdown",
	author="BanksyScope Contributors",
	license="MIT",
	packages=find_packages(exclude=["tests", "tests.*"]),
	python_requires=">=3.9",
	install_requires=[
		"numpy>=1.23",
		"anndata>=0.10",
		"pandas>=1.5",
		"pyyaml>=6.0",
		"rich>=13",
		"click>=8",
		"pyarrow>=14",
		"scikit-learn>=1.2",
		"scipy>=1.10",
		"joblib>=1.3",
		"scanpy>=1.10",
		"umap-learn>=0.5",
		# graph community detection
		"networkx>=3.0",
		"leidenalg>=0.10",
		"python-igraph>=0.10",
	],
	extras_require={
		"test": [
			"pytest>=7",
		],
	},
	entry_points={
		"console_scripts": [
			"banksyscope=banksyscope.cli:main",
		]
	},
	classifiers=[
		"License :: OSI Approved :: MIT License",
		"Programming Language :: Python :: 3",
		"Programming Language :: Python :: 3 :: Only",
		"Programming Language :: Python :: 3.9",
		"Programming Language :: Python :: 3.10",
		"Programming Language :: Python :: 3.11",
		"Intended Audience :: Science/Research",
		"Topic :: Scientific/Engineering :: Bio-Informatics",
	],
)
