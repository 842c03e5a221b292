from setuptools import setup, find_packages


setup(
    name="foldervault",
    version="0.1",
    packages=find_packages(include=["foldervault", "foldervault.*"]),
    description="Back up a whole directory into one password-protected, authenticated encrypted file.",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    entry_points={
        "console_scripts": [
            "foldervault=foldervault.cli:main",
        ]
    },
)
