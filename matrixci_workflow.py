# matrixci_workflow.py
# Release pipeline for a maturin-built native extension (clarabel):
# wheels for linux/macos/windows, an sdist, and a PyPI upload on v* tags.
from __future__ import annotations

from matrixci.dsl import download, job, matrix, matrix_is, on, tag_push, upload, wf
from matrixci.step_workflows.maturin import build_sdist, build_wheels
from matrixci.step_workflows.publish import publish_step
from matrixci.step_workflows.smoke import install_and_import

PACKAGE_NAME = "clarabel"
PYTHON_VERSION = "3.7"  # abi3 wheels
PYPI_TARGET = "pypi"  # "testpypi" for dry runs

EXAMPLES = ["examples/python/example_qp.py", "examples/python/example_sdp.py"]


def workflow():
    return wf(
        job(
            "linux",
            build_wheels(
                target="{{ matrix.target }}",
                python=PYTHON_VERSION,
                features=["python"],
                manylinux="auto",
                args="-v",
            ),
            install_and_import(
                PACKAGE_NAME,
                scripts=EXAMPLES,
                when=matrix_is("target", "x86_64"),
            ),
            platform="linux",
            matrix=matrix(target=["x86_64", "i686", "aarch64"]),
            requires=["maturin"],
            upload=upload("wheels-linux-{{ matrix.target }}"),
        ),
        job(
            "macos",
            build_wheels("Build wheels - x86_64", target="x86_64", python=PYTHON_VERSION, features=["python"]),
            install_and_import(PACKAGE_NAME, name="Install and test built wheel - x86_64", scripts=EXAMPLES),
            build_wheels("Build wheels - universal2", target="universal2", python=PYTHON_VERSION, features=["python"]),
            install_and_import(
                PACKAGE_NAME,
                name="Install and test built wheel - universal2",
                artifact=f"{{{{ workspace }}}}/dist/{PACKAGE_NAME}-*universal2.whl",
                scripts=EXAMPLES,
            ),
            platform="macos",
            requires=["maturin"],
            upload=upload("wheels-macos"),
        ),
        job(
            "windows",
            build_wheels(target="{{ matrix.target }}", python=PYTHON_VERSION, features=["python"]),
            install_and_import(PACKAGE_NAME, scripts=EXAMPLES),
            platform="windows",
            matrix=matrix(target=["x64", "x86"]),
            requires=["maturin"],
            upload=upload("wheels-windows-{{ matrix.target }}"),
        ),
        job(
            "sdist",
            build_sdist(),
            install_and_import(
                PACKAGE_NAME,
                name="Test sdist",
                artifact="{{ workspace }}/dist/*.tar.gz",
            ),
            platform="linux",
            requires=["maturin"],
            upload=upload("sdist"),
        ),
        job(
            "release",
            publish_step(repository=PYPI_TARGET),
            needs=["linux", "macos", "windows", "sdist"],
            platform="linux",
            when=tag_push("v*"),
            download=[download("wheels-*"), download("sdist")],
        ),
        name="pypi",
        triggers=on(pull_request=["main"], push_branches=["main"], push_tags=["v*"]),
        env={"PACKAGE_NAME": PACKAGE_NAME, "PYTHON_VERSION": PYTHON_VERSION},
    )
