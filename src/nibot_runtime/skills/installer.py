"""
Skills 安装（目录 / zip / git）。

目标布局：`<layer root>/<name>/{SKILL.md|manifest,scripts/...}`，其中 layer root 为
`skills/`（local）、`skills/_upstream/`（upstream）或 `skills/_overrides/`（override）。

来源形态识别（按优先级）：
1) 目录下存在 `skills/` 子目录：安装其中每个带 `scripts/` 的直接子目录；
2) 目录自身带 `scripts/`：作为一个 skill 安装（名字取目录名）；
3) 路径本身名为 `scripts`：以父目录名为 skill 名，并补一个默认 SKILL.md；
4) 否则扫描直接子目录，安装每个带 `scripts/` 的子目录。

安全与一致性约束（fail-closed）：
- 任何候选与已有 skill 同名时，在复制任何文件之前整体失败；
- 每个 skill 先复制到同级隐藏 staging 目录，再 rename 到位；失败时清理 staging
  并回滚本次调用已经落位的 skill；
- 单文件上限与总字节上限在一次调用内统一计数；噪声目录（`.git`、`node_modules` 等）与 symlink 一律跳过；
- zip：先检查归档大小；entry 为 symlink / 绝对路径 / 含盘符 / 含 `..` 时整体失败；
  先检查声明大小，再通过限长读取兜底（即使 header 被伪造也不会无上限落盘）；
- git：默认关闭；只接受 `https://`；浅克隆到临时目录，结束后无论成败都会删除。
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import re
import shutil
import stat
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, List, Optional, Union

from nibot_runtime.config.loader import INSTALL_LAYERS, RuntimeSettings
from nibot_runtime.core.errors import FrameworkError
from nibot_runtime.core.executor import Executor, ExecutorPool
from nibot_runtime.core.utils import now_rfc3339
from nibot_runtime.safety.guard import is_safe_git_url
from nibot_runtime.skills.discovery import SOURCE_META_FILENAME
from nibot_runtime.skills.layers import SkillLayer, layer_root

logger = logging.getLogger(__name__)

IGNORED_DIR_NAMES = frozenset(
    {
        ".git",
        ".github",
        ".idea",
        ".vscode",
        "node_modules",
        "dist",
        "build",
        "target",
        "vendor",
        ".venv",
        "venv",
        "__pycache__",
    }
)

_COPY_CHUNK = 64 * 1024
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def should_ignore_name(name: str) -> bool:
    """噪声目录/文件名（大小写不敏感）。"""

    return name.strip().lower() in IGNORED_DIR_NAMES


def safe_base_name(path: str) -> str:
    """把路径/URL 的 basename（去扩展名）转成只含 `[A-Za-z0-9_-]` 的片段；空值为 `zip`。"""

    base = posixpath.basename(str(path).replace("\\", "/").rstrip("/")).strip()
    base = os.path.splitext(base)[0]
    base = _UNSAFE_NAME_CHARS.sub("_", base)
    return base or "zip"


def _invalid(message: str, **details: object) -> FrameworkError:
    """构造 `SKILL_INSTALL_INVALID`。"""

    return FrameworkError(code="SKILL_INSTALL_INVALID", message=message, details=dict(details))


def _too_large(message: str, **details: object) -> FrameworkError:
    """构造 `SKILL_INSTALL_TOO_LARGE`。"""

    return FrameworkError(code="SKILL_INSTALL_TOO_LARGE", message=message, details=dict(details))


class _CopyBudget:
    """
    一次安装调用内共享的字节预算。

    - `max_file_bytes`：单文件上限
    - `max_total_bytes`：累计上限
    """

    def __init__(self, *, max_file_bytes: int, max_total_bytes: int) -> None:
        """创建预算。"""

        self.max_file_bytes = max(1, int(max_file_bytes))
        self.max_total_bytes = max(1, int(max_total_bytes))
        self.used = 0

    def file_too_large(self, label: str, size: Optional[int] = None) -> FrameworkError:
        """单文件超限错误（label 为来源路径或 zip entry 名）。"""

        if size is None:
            msg = f"{label} exceeds NIBOT_SKILLS_MAX_FILE_BYTES={self.max_file_bytes}"
        else:
            msg = f"{label} ({size} bytes) exceeds NIBOT_SKILLS_MAX_FILE_BYTES={self.max_file_bytes}"
        return _too_large(msg, reason="file_too_large", max_bytes=self.max_file_bytes)

    def total_too_large(self, prefix: str) -> FrameworkError:
        """累计超限错误。"""

        return _too_large(
            f"{prefix} total too large: exceeds NIBOT_SKILLS_MAX_TOTAL_BYTES={self.max_total_bytes}",
            reason="total_too_large",
            max_bytes=self.max_total_bytes,
        )

    def copy_stream(self, src: BinaryIO, dst: BinaryIO, *, label: str, total_prefix: str) -> int:
        """
        限长复制：最多写入 `min(单文件上限, 剩余总预算)` 字节。

        说明：
        - 写满上限后再尝试读 1 字节；若仍有内容则判定超限（区分单文件/累计两种原因）。
        """

        remaining_total = self.max_total_bytes - self.used
        allow = min(self.max_file_bytes, max(0, remaining_total))
        written = 0
        while written < allow:
            chunk = src.read(min(_COPY_CHUNK, allow - written))
            if not chunk:
                break
            dst.write(chunk)
            written += len(chunk)
        if written >= allow and src.read(1):
            if allow >= self.max_file_bytes:
                raise self.file_too_large(label)
            raise self.total_too_large(total_prefix)
        self.used += written
        return written


@dataclass(frozen=True)
class _Candidate:
    """待安装的一个 skill。"""

    name: str
    src_dir: Path
    scripts_only: bool = False


def _has_scripts(d: Path) -> bool:
    """目录下是否有 `scripts/` 子目录。"""

    return (d / "scripts").is_dir()


def _children_with_scripts(root: Path) -> List[_Candidate]:
    """直接子目录中带 `scripts/` 的候选（跳过噪声目录；按名字排序）。"""

    out = []
    for child in sorted(root.iterdir(), key=lambda p: p.name):
        if not child.is_dir() or child.is_symlink() or should_ignore_name(child.name):
            continue
        if _has_scripts(child):
            out.append(_Candidate(name=child.name, src_dir=child))
    return out


def _plan_candidates(src: Path) -> List[_Candidate]:
    """
    按来源形态识别候选列表。

    异常：
    - `FrameworkError(SKILL_INSTALL_INVALID)`：找不到任何 skill
    """

    if (src / "skills").is_dir():
        root = src / "skills"
        found = _children_with_scripts(root)
        if not found:
            raise _invalid(f"no skills found under: {root}", reason="no_skills", path=str(root))
        return found
    if _has_scripts(src):
        return [_Candidate(name=src.name, src_dir=src)]
    if src.name.lower() == "scripts":
        return [_Candidate(name=src.parent.name, src_dir=src, scripts_only=True)]
    found = _children_with_scripts(src)
    if not found:
        raise _invalid(f"no skills found under: {src}", reason="no_skills", path=str(src))
    return found


def _copy_tree(src: Path, dst: Path, budget: _CopyBudget) -> None:
    """递归复制目录（跳过噪声目录与 symlink；受预算约束）。"""

    dst.mkdir(parents=True, exist_ok=True)
    for entry in sorted(os.scandir(src), key=lambda e: e.name):
        if should_ignore_name(entry.name) or entry.is_symlink():
            continue
        s = Path(entry.path)
        d = dst / entry.name
        if entry.is_dir():
            _copy_tree(s, d, budget)
            continue
        size = entry.stat().st_size
        if size > budget.max_file_bytes:
            raise budget.file_too_large(f"file too large: {s}", size)
        with s.open("rb") as sf, d.open("wb") as df:
            budget.copy_stream(sf, df, label=f"file too large: {s}", total_prefix="skill install")


def ensure_default_skill_md(skill_dir: Path, name: str) -> None:
    """缺少 SKILL.md 时写入一个最小 frontmatter。"""

    p = skill_dir / "SKILL.md"
    if p.exists():
        return
    p.write_text(f"---\nname: {name}\ndescription: Imported skill\n---\n", encoding="utf-8")


def write_skill_source_meta(skill_dir: Path, origin: str, layer: str) -> None:
    """写 provenance sidecar（origin 为空时不写）。"""

    origin = (origin or "").strip()
    if not origin:
        return
    meta = {"origin": origin, "layer": (layer or "").strip().lower(), "installed_at": now_rfc3339()}
    (skill_dir / SOURCE_META_FILENAME).write_text(json.dumps(meta, ensure_ascii=False), encoding="utf-8")


def _resolve_layer(layer: str, settings: RuntimeSettings) -> str:
    """配置中的 install_layer 优先于调用方给出的默认层。"""

    chosen = (settings.skills.install_layer or layer or "local").strip().lower()
    if chosen not in INSTALL_LAYERS:
        raise _invalid(f"unknown install layer: {chosen}", reason="unknown_layer", layer=chosen)
    return chosen


def _stage_and_place(dst_root: Path, cand: _Candidate, budget: _CopyBudget, *, origin: str, layer: str) -> Path:
    """复制到 staging 目录并 rename 到位；返回最终目录。"""

    final = dst_root / cand.name
    staging = Path(tempfile.mkdtemp(prefix=f".{cand.name}.", suffix=".staging", dir=str(dst_root)))
    try:
        if cand.scripts_only:
            _copy_tree(cand.src_dir, staging / "scripts", budget)
            ensure_default_skill_md(staging, cand.name)
        else:
            _copy_tree(cand.src_dir, staging, budget)
        write_skill_source_meta(staging, origin, layer)
        if final.exists():
            raise FrameworkError(
                code="SKILL_INSTALL_CONFLICT",
                message=f"skill already exists: {cand.name}",
                details={"name": cand.name},
            )
        os.rename(staging, final)
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
    return final


def install_skills_from_path(
    workspace: Union[str, Path],
    src: Union[str, Path],
    *,
    settings: Optional[RuntimeSettings] = None,
    origin: str = "",
    layer: str = "local",
) -> List[str]:
    """
    从目录（或 `.zip` 文件）安装 skills。

    参数：
    - workspace：workspace 根目录
    - src：来源路径
    - settings：运行时配置（限额与安装层）；缺省为内置默认值
    - origin：provenance 中记录的来源（缺省为 src 的绝对路径）
    - layer：默认安装层（`local|upstream|override`；可被 settings.skills.install_layer 覆盖）

    返回：
    - 已安装的 skill 名（已排序）

    异常：
    - `FrameworkError`：`SKILL_INSTALL_INVALID` / `SKILL_INSTALL_CONFLICT` / `SKILL_INSTALL_TOO_LARGE`
    """

    settings = settings or RuntimeSettings()
    raw = str(src or "").strip()
    if not raw:
        raise _invalid("empty source path", reason="empty_source")
    src_abs = Path(raw).absolute()
    origin = origin or str(src_abs)
    if not src_abs.exists():
        raise _invalid(f"source not found: {src_abs}", reason="not_found", path=str(src_abs))
    if not src_abs.is_dir():
        if src_abs.suffix.lower() == ".zip":
            return install_skills_from_zip(workspace, src_abs, settings=settings, origin=origin, layer=layer)
        raise _invalid(f"source is not a directory: {src_abs}", reason="not_a_directory", path=str(src_abs))

    chosen_layer = _resolve_layer(layer, settings)
    dst_root = layer_root(workspace, SkillLayer(chosen_layer))
    candidates = _plan_candidates(src_abs)

    for cand in candidates:
        if not cand.name.strip() or cand.name in (".", ".."):
            raise _invalid("empty skill name", reason="empty_name")
        if (dst_root / cand.name).exists():
            raise FrameworkError(
                code="SKILL_INSTALL_CONFLICT",
                message=f"skill already exists: {cand.name}",
                details={"name": cand.name, "layer": chosen_layer},
            )

    dst_root.mkdir(parents=True, exist_ok=True)
    budget = _CopyBudget(
        max_file_bytes=settings.skills.max_file_bytes, max_total_bytes=settings.skills.max_total_bytes
    )
    placed: List[Path] = []
    try:
        for cand in candidates:
            placed.append(_stage_and_place(dst_root, cand, budget, origin=origin, layer=chosen_layer))
    except Exception:
        for p in placed:
            shutil.rmtree(p, ignore_errors=True)
        raise

    names = sorted(c.name for c in candidates)
    logger.info("installed skills into %s layer: %s", chosen_layer, ", ".join(names))
    return names


def _zipinfo_is_symlink(info: zipfile.ZipInfo) -> bool:
    """
    判断 zip entry 是否为 symlink（Unix mode）。

    说明：
    - zipfile 没有直接 API；检查 external_attr 的高 16 位。
    """

    mode = (int(getattr(info, "external_attr", 0)) >> 16) & 0xFFFF
    return stat.S_ISLNK(mode)


def safe_zip_rel_path(name: str) -> PurePosixPath:
    """
    校验 zip entry name 并返回规范化的相对路径。

    异常：
    - `FrameworkError(SKILL_INSTALL_INVALID)`：空路径、绝对路径、含盘符冒号、规范化后仍含 `..`
    """

    raw = str(name or "")
    n = raw.replace("\\", "/")
    if n.startswith("/"):
        raise _invalid(f"unsafe zip entry: {raw}", reason="absolute_path", name=raw)
    if ":" in n:
        raise _invalid(f"unsafe zip entry: {raw}", reason="drive_letter", name=raw)
    clean = posixpath.normpath(n) if n else ""
    if clean in ("", "."):
        raise _invalid(f"unsafe zip entry: {raw}", reason="empty_name", name=raw)
    if clean == ".." or clean.startswith("../"):
        raise _invalid(f"unsafe zip entry: {raw}", reason="dotdot_segment", name=raw)
    return PurePosixPath(clean)


def _extract_zip(zip_path: Path, dest: Path, settings: RuntimeSettings) -> None:
    """把 zip 内容解到 dest（受大小约束；不安全 entry 整体失败）。"""

    budget = _CopyBudget(
        max_file_bytes=settings.skills.max_file_bytes, max_total_bytes=settings.skills.max_total_bytes
    )
    try:
        zf = zipfile.ZipFile(zip_path)
    except zipfile.BadZipFile as e:
        raise _invalid(f"invalid zip archive: {zip_path}", reason="bad_zip", error=str(e)) from e

    with zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            rel = safe_zip_rel_path(info.filename)
            if _zipinfo_is_symlink(info):
                logger.warning("rejecting symlink zip entry: %s", info.filename)
                raise _invalid(f"unsafe zip entry: {info.filename}", reason="symlink", name=info.filename)
            if any(should_ignore_name(part) for part in rel.parts):
                continue
            label = f"zip entry too large: {rel}"
            if int(info.file_size) > budget.max_file_bytes:
                raise budget.file_too_large(label, int(info.file_size))

            out = dest.joinpath(*rel.parts)
            out.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, out.open("wb") as dst:
                budget.copy_stream(src, dst, label=label, total_prefix="zip")


def install_skills_from_zip(
    workspace: Union[str, Path],
    zip_path: Union[str, Path],
    *,
    settings: Optional[RuntimeSettings] = None,
    origin: str = "",
    layer: str = "local",
) -> List[str]:
    """
    从 zip 安装 skills：先解到临时目录，再按目录来源安装。

    异常：
    - `FrameworkError`：`SKILL_INSTALL_TOO_LARGE`（归档/entry/总量超限）、`SKILL_INSTALL_INVALID`（不安全 entry、坏归档）
    """

    settings = settings or RuntimeSettings()
    zp = Path(zip_path).absolute()
    if not zp.is_file():
        raise _invalid(f"source not found: {zp}", reason="not_found", path=str(zp))
    size = zp.stat().st_size
    max_zip = settings.skills.max_zip_bytes
    if size > max_zip:
        raise _too_large(
            f"zip too large: {size} bytes exceeds NIBOT_SKILLS_MAX_ZIP_BYTES={max_zip}",
            reason="zip_too_large",
            max_bytes=max_zip,
        )

    tmp = Path(tempfile.mkdtemp(prefix="nibot_skill_zip_"))
    # 顶层即 scripts/ 的归档按目录名命名 skill：固定为 zip 的 basename
    root = tmp / safe_base_name(str(zp))
    try:
        root.mkdir()
        _extract_zip(zp, root, settings)
        return install_skills_from_path(workspace, root, settings=settings, origin=origin or str(zp), layer=layer)
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def install_skills_from_git(
    workspace: Union[str, Path],
    url: str,
    *,
    settings: Optional[RuntimeSettings] = None,
    layer: str = "upstream",
    pool: Optional[ExecutorPool] = None,
) -> List[str]:
    """
    浅克隆 git 仓库并安装其中的 skills。

    参数：
    - url：仅允许 `https://`
    - layer：默认安装层（默认 upstream）
    - pool：子进程并发池（可选）

    异常：
    - `FrameworkError`：`SKILL_INSTALL_DISABLED` / `SKILL_INSTALL_DENIED` / `SKILL_INSTALL_FAILED`，以及目录安装的各类错误
    """

    settings = settings or RuntimeSettings()
    u = (url or "").strip()
    if not u:
        raise _invalid("empty git url", reason="empty_url")
    if not settings.skills.git_enabled:
        raise FrameworkError(
            code="SKILL_INSTALL_DISABLED", message="git install disabled (set NIBOT_ENABLE_GIT=1 to enable)"
        )
    if not is_safe_git_url(u):
        raise FrameworkError(
            code="SKILL_INSTALL_DENIED", message="git url denied (only https:// URLs are allowed)", details={"url": u}
        )
    git = shutil.which("git")
    if not git:
        raise FrameworkError(code="SKILL_INSTALL_FAILED", message="git not found in PATH")

    ws = Path(workspace).absolute()
    ws.mkdir(parents=True, exist_ok=True)
    tmp = Path(tempfile.mkdtemp(prefix="nibot_skill_git_"))
    checkout = tmp / safe_base_name(u)
    try:
        res = Executor(max_output_bytes=settings.exec.max_output_bytes).run_command(
            [git, "clone", "--depth", "1", u, str(checkout)],
            cwd=ws,
            timeout_ms=settings.skills.git_clone_timeout_seconds * 1000,
            pool=pool,
        )
        if not res.ok:
            raise FrameworkError(
                code="SKILL_INSTALL_FAILED",
                message=f"git clone failed: {res.error}",
                details={"stderr": res.stderr.strip()},
            )
        return install_skills_from_path(ws, checkout, settings=settings, origin=u, layer=layer)
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


__all__ = [
    "IGNORED_DIR_NAMES",
    "ensure_default_skill_md",
    "install_skills_from_git",
    "install_skills_from_path",
    "install_skills_from_zip",
    "safe_base_name",
    "safe_zip_rel_path",
    "should_ignore_name",
    "write_skill_source_meta",
]
