from setuptools import setup, find_packages

setup(
    name="knowledge_sync",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        # Remote embeddings (the default embedder is local and needs nothing)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "knowledge-sync=knowledge_sync.kb.cli:main",
        ],
    },
    description="Project knowledge discovery, background indexing and semantic search.",
)
