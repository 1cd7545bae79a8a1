from setuptools import find_packages, setup

setup(
    name="ilias-mirror",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "aiohttp>=3.8.1",
        "beautifulsoup4>=4.10.0",
        "rich>=11.0.0",
        "keyring>=23.5.0",
        "certifi>=2021.10.8",
        "yarl>=1.7.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "ilias-mirror = ilias_mirror.__main__:main",
        ],
    },
)

# When updating the version, also update ilias_mirror/version.py
