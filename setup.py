from setuptools import find_packages, setup


setup(
    name="tokenscope",
    version="1.0.0",
    description="Token listing poller with Birdeye fetch, DexScreener enrichment and a JSON API",
    packages=find_packages(include=["tokenscope", "tokenscope.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.8",
        "Flask>=2.2",
        "pydantic>=2",
        "PyYAML>=6",
    ],
    extras_require={"test": ["pytest>=7"]},
    entry_points={"console_scripts": ["tokenscope=tokenscope.cli:main"]},
)
