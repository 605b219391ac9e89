#!/usr/bin/env python3

from setuptools import setup
import os


directory = os.path.dirname(os.path.realpath(__file__))


if __name__ == "__main__":
    setup(
        name="modelview",
        packages=["modelview", "modelview.loaders"],
        python_requires='>3.10.0',
        version="0.1.0",
        license="MIT",
        description="Multi-format 3D model decoding pipeline",
        author="mirmik",
        author_email="mirmikns@yandex.ru",
        url="https://github.com/mirmik/modelview",
        long_description=open(os.path.join(
            directory, "README.md"), "r", encoding="utf8").read(),
        long_description_content_type="text/markdown",
        keywords=["3d", "gltf", "stl", "fbx", "gcode", "cad"],
        classifiers=[],
        include_package_data=True,
        install_requires=[
            "numpy",
            "Pillow>=9.0",
            "ufbx",
        ],
        extras_require={
            "test": [
                "pytest",
            ],
        },
        zip_safe=False,
    )
