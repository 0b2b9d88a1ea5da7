# Guild Vault - Project Setup Configuration

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="guild-vault",
    version="0.1.0",
    author="Guild Vault Team",
    description="Shared game account credential vault with TOTP and QR enrollment",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: Security :: Cryptography",
        "License :: Other/Proprietary License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.11",
    install_requires=[
        "cryptography>=42.0.0",
        "structlog>=24.1.0",
        "httpx>=0.26.0",
        "python-dotenv>=1.0.0",
        "pyotp>=2.9.0",
        "Pillow>=10.0.0",
        "numpy>=1.26.0",
        "opencv-python-headless>=4.8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "qrcode[pil]>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "guild-vault=guild_vault.__main__:main",
        ],
    },
)
