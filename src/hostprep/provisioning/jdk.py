"""Locate installed JDKs and fill in the steps that depend on them.

The JVM directory name depends on the package (``java-17-openjdk-amd64``,
``temurin-17-jdk-amd64``, ...), so it is looked up on the host once the
package is installed instead of being guessed when profiles are built.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import PostconditionNotMet
from ..providers.apt import AptProvider
from ..providers.host import Host
from ..templates import TemplateEngine
from .models import AlternativeSelected, FileContentEquals, JavaHomeExported, JdkHome, ProvisioningStep

LOGGER = logging.getLogger(__name__)

JVM_ROOT = Path("/usr/lib/jvm")
JAVA_HOME_TEMPLATE = "profile/java_home.sh.j2"
JDK_TOOLS = ("java", "javac")


@dataclass(slots=True)
class JdkLocator:
    """Resolve ``JAVA_HOME`` for a JDK package installed on the host."""

    host: Host
    apt: AptProvider
    templates: TemplateEngine
    jvm_root: Path = JVM_ROOT

    def home(self, jdk: JdkHome) -> Path:
        """Return the ``JAVA_HOME`` of the JDK installed by ``jdk.package``.

        The ``bin/javac`` entry listed by ``dpkg -L`` wins; otherwise the JVM
        root is searched for a directory named after the version. The chosen
        directory must hold executable ``java`` and ``javac`` binaries.
        """
        pattern = str(self.jvm_root / "*" / "bin" / "javac")
        candidates = [
            path.parent.parent
            for path in self.apt.package_files(jdk.package)
            if path.match(pattern)
        ]
        if not candidates:
            LOGGER.debug("dpkg -L %s lists no javac; searching %s", jdk.package, self.jvm_root)
            candidates = [
                path.parent.parent
                for path in self.host.glob(str(self.jvm_root / f"*{jdk.version}*" / "bin" / "javac"))
            ]
        for home in candidates:
            if all(self.host.is_executable(home / "bin" / tool) for tool in JDK_TOOLS):
                return home
        raise PostconditionNotMet(
            f"No JDK with executable java and javac found for {jdk.package} under {self.jvm_root}"
        )

    def resolve(self, step: ProvisioningStep) -> ProvisioningStep:
        """Return *step* with its JDK-dependent values filled in.

        Steps that do not depend on a JDK are returned unchanged.
        """
        if isinstance(step, AlternativeSelected) and step.jdk is not None:
            home = self.home(step.jdk)
            return dataclasses.replace(step, target=home / "bin" / step.name, jdk=None)
        if isinstance(step, JavaHomeExported):
            home = self.home(step.jdk)
            content = self.templates.render_to_string(JAVA_HOME_TEMPLATE, {"java_home": str(home)})
            return FileContentEquals(
                path=step.path,
                content=content,
                mode=step.mode,
                description=step.description,
                required=step.required,
            )
        return step


__all__ = ["JVM_ROOT", "JdkLocator"]
