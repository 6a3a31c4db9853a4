"""Build sigrelay package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="sigrelay",
    version="0.1.0",
    description="WebRTC signaling relay server and message schema adapter",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "aiortc>=1.6.0",
        "av>=10.0.0",
        "click",
        "cryptography",
        "numpy",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13.0",
    ],
    extras_require={
        "dev": [
            "coverage",
            "pytest",
            "pytest-asyncio>=0.23.0",
            "uvloop ; sys_platform!='win32'",
        ],
    },
    entry_points={
        "console_scripts": [
            "sigrelay-server=sigrelay.run:cli",
            "sigrelay-publish=sigrelay.publish:cli",
            "sigrelay-view=sigrelay.view:cli",
        ],
    },
)
