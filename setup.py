from setuptools import setup, find_packages

setup(
    name="tokenbucket",
    version="0.1.0",
    packages=find_packages(include=["tokenbucket", "tokenbucket.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
