"""Bundle test files into self-contained scripts with esbuild."""

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from cdp_test_pool.config import BundlerConfig
from cdp_test_pool.worker import API_EXPORTS, API_GLOBAL

log = logging.getLogger(__name__)

FIXED_EXTERNALS = ("fs", "os", "path", "process", "uxp", "photoshop")
SOURCE_MAPPING_URL = re.compile(r"^//# sourceMappingURL=.*$", re.MULTILINE)
UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class BundleError(RuntimeError):
    """esbuild could not produce a bundle for a test file."""

    def __init__(self, filepath: str, message: str) -> None:
        super().__init__(f"Failed to bundle {filepath}: {message}")
        self.filepath = filepath


@dataclass(frozen=True, kw_only=True)
class BundledFile:
    """Bundled code and its source map for one test file."""

    filepath: str
    code: str
    sourcemap: str
    mtime: float


def render_api_shim() -> str:
    """Module source re-exporting the worker runtime's test API."""
    lines = [f"const api = globalThis.{API_GLOBAL};"]
    lines.extend(f"export const {name} = api.{name};" for name in API_EXPORTS)
    lines.append("export default api;")
    return "\n".join(lines) + "\n"


@dataclass(kw_only=True)
class Bundler:
    """Runs esbuild in the project root and caches results by mtime."""

    root: Path
    config: BundlerConfig = field(default_factory=BundlerConfig)
    _cache: dict[str, BundledFile] = field(default_factory=dict, repr=False)

    @property
    def out_dir(self) -> Path:
        """Directory receiving bundles and generated shims."""
        return self.root / self.config.out_dir

    def shim_path(self, module: str) -> Path:
        """Generated shim standing in for the test API ``module``."""
        return self.out_dir / f"{UNSAFE_FILENAME_CHARS.sub('_', module)}.shim.js"

    def outfile_for(self, filepath: Path) -> Path:
        """Bundle path for ``filepath``, unique per absolute source path."""
        digest = hashlib.sha1(str(filepath).encode()).hexdigest()[:8]
        return self.out_dir / f"{filepath.stem}-{digest}.js"

    def build_command(self, entry: Path, outfile: Path) -> list[str]:
        """Command line for one esbuild invocation."""
        command = [
            self.config.esbuild,
            str(entry),
            "--bundle",
            "--format=iife",
            "--platform=neutral",
            "--main-fields=module,main",
            f"--target={self.config.target}",
            "--sourcemap=external",
            "--log-level=error",
            f"--outfile={outfile}",
        ]
        for external in (*FIXED_EXTERNALS, *self.config.externals):
            command.append(f"--external:{external}")
        for module in self.config.api_modules:
            command.append(f"--alias:{module}={self._relative(self.shim_path(module))}")
        for name, target in self.config.alias.items():
            command.append(f"--alias:{name}={target}")
        for name, value in self.config.define.items():
            command.append(f"--define:{name}={value}")
        for extension, loader in self.config.loader.items():
            command.append(f"--loader:{extension}={loader}")
        command.extend(self.config.extra_args)
        return command

    async def bundle(self, filepath: str) -> BundledFile:
        """Bundle ``filepath`` unless an up-to-date bundle is cached.

        Raises:
            BundleError: If the file is missing or esbuild fails

        """
        entry = Path(filepath)
        if not entry.is_absolute():
            entry = self.root / entry
        key = str(entry)

        try:
            mtime = entry.stat().st_mtime
        except OSError as exc:
            raise BundleError(filepath, str(exc)) from exc

        cached = self._cache.get(key)
        if cached is not None and cached.mtime == mtime:
            log.debug("Using cached bundle for %s", key)
            return cached

        self._write_shims()
        outfile = self.outfile_for(entry)
        command = self.build_command(entry, outfile)
        log.debug("Running %s", " ".join(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BundleError(
                filepath, f"esbuild executable {self.config.esbuild!r} not found"
            ) from exc
        _, stderr = await process.communicate()

        if process.returncode != 0:
            raise BundleError(filepath, stderr.decode(errors="replace").strip())

        map_file = outfile.with_name(f"{outfile.name}.map")
        try:
            code = outfile.read_text(encoding="utf-8")
            sourcemap = map_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise BundleError(filepath, f"missing esbuild output: {exc}") from exc

        sourcemap = absolutize_sources(sourcemap, outfile.parent)
        code = SOURCE_MAPPING_URL.sub("", code).rstrip()
        if self.config.embed_sourcemap:
            code = f"{code}\nvar EVAL_SOURCEMAP = {json.dumps(sourcemap)};"
        code = f"{code}\n//# sourceURL={key}\n"

        bundled = BundledFile(filepath=key, code=code, sourcemap=sourcemap, mtime=mtime)
        self._cache[key] = bundled
        log.info("Bundled %s (%d bytes)", self._relative(entry), len(code))
        return bundled

    def _write_shims(self) -> None:
        shim = render_api_shim()
        for module in self.config.api_modules:
            path = self.shim_path(module)
            if path.exists() and path.read_text(encoding="utf-8") == shim:
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(shim, encoding="utf-8")

    def _relative(self, path: Path) -> str:
        try:
            return f"./{path.relative_to(self.root).as_posix()}"
        except ValueError:
            return str(path)


def absolutize_sources(sourcemap: str, base_dir: Path) -> str:
    """Rewrite relative ``sources`` of a source map against ``base_dir``."""
    data = json.loads(sourcemap)
    source_root = data.pop("sourceRoot", "") or ""
    sources: list[str] = []
    for source in data.get("sources", []):
        path = Path(f"{source_root.rstrip('/')}/{source}" if source_root else source)
        if not path.is_absolute():
            path = (base_dir / path).resolve()
        sources.append(str(path))
    data["sources"] = sources
    return json.dumps(data)
