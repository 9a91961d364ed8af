from setuptools import find_packages, setup

from machodump import __author__, __version__

setup(
    name="machodump",
    version=__version__,
    description="Static Mach-O analyzer",
    author=__author__,
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.7",
    install_requires=["more_itertools"],
    extras_require={"test": ["pytest", "pytest-xdist", "invoke"]},
    package_data={"machodump": ["py.typed"]},
)
