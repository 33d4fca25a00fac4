"""
Skills 三层目录与通用分层解析。

层（优先级从高到低）：
- override：`skills/_overrides/<name>`
- local：`skills/<name>`
- upstream：`skills/_upstream/<name>`

`resolve_layered(workspace, name, *relative)` 是唯一的“分层查找”入口：
脚本定位、主目录选择、来源（provenance）读取都通过它完成。
每个候选路径都经过 PathResolver 限制在 workspace 之内；越界候选被跳过。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from nibot_runtime.core.errors import UserError
from nibot_runtime.core.paths import resolve_workspace_path

logger = logging.getLogger(__name__)

SKILLS_DIR = "skills"


class SkillLayer(str, Enum):
    """skill 所在层。"""

    OVERRIDE = "override"
    LOCAL = "local"
    UPSTREAM = "upstream"


# 优先级顺序（override > local > upstream）
LAYER_ROOTS: Tuple[Tuple[SkillLayer, str], ...] = (
    (SkillLayer.OVERRIDE, "skills/_overrides"),
    (SkillLayer.LOCAL, "skills"),
    (SkillLayer.UPSTREAM, "skills/_upstream"),
)


@dataclass(frozen=True)
class LayeredHit:
    """分层查找命中结果。"""

    layer: SkillLayer
    path: Path


def layer_root(workspace: Union[str, Path], layer: SkillLayer) -> Path:
    """返回某层的根目录（绝对路径）。"""

    for lyr, rel in LAYER_ROOTS:
        if lyr is layer:
            return Path(workspace).absolute().joinpath(*rel.split("/"))
    raise ValueError(f"unknown layer: {layer}")


def iter_layer_candidates(
    workspace: Union[str, Path], name: str, *relative: str
) -> Iterator[LayeredHit]:
    """
    按优先级产出每一层的候选路径（不检查存在性）。

    说明：越界候选（例如 name 含 `..`）被跳过。
    """

    for layer, rel_root in LAYER_ROOTS:
        rel = "/".join([rel_root, name, *relative])
        try:
            p = resolve_workspace_path(workspace, rel)
        except UserError:
            logger.debug("skip layered candidate outside workspace: %s", rel)
            continue
        yield LayeredHit(layer=layer, path=p)


def resolve_layered(
    workspace: Union[str, Path],
    name: str,
    *relative: str,
    want_dir: Optional[bool] = None,
) -> Optional[LayeredHit]:
    """
    返回第一个存在的分层候选。

    参数：
    - workspace：workspace 根目录
    - name：skill 目录名
    - relative：skill 目录内的相对路径段（为空表示 skill 目录本身）
    - want_dir：True 只接受目录；False 只接受文件；None 都接受

    返回：
    - `LayeredHit` 或 None
    """

    for hit in iter_layer_candidates(workspace, name, *relative):
        p = hit.path
        if want_dir is True and not p.is_dir():
            continue
        if want_dir is False and not p.is_file():
            continue
        if want_dir is None and not p.exists():
            continue
        return hit
    return None


def existing_layer_dirs(workspace: Union[str, Path], name: str) -> List[LayeredHit]:
    """返回 skill 在各层中实际存在的目录（按优先级排序）。"""

    return [hit for hit in iter_layer_candidates(workspace, name) if hit.path.is_dir()]


def list_skill_dir_names(root: Path) -> List[str]:
    """列出某层根目录下的 skill 目录名（跳过 `.`/`_` 开头的目录）。"""

    if not root.is_dir():
        return []
    names = []
    for entry in root.iterdir():
        if not entry.is_dir():
            continue
        n = entry.name
        if n.startswith(".") or n.startswith("_"):
            continue
        names.append(n)
    return sorted(names)


def all_skill_names(workspace: Union[str, Path]) -> List[str]:
    """三层目录名的并集（已排序）。"""

    names = set()
    for layer, _rel in LAYER_ROOTS:
        names.update(list_skill_dir_names(layer_root(workspace, layer)))
    return sorted(names)


__all__ = [
    "LAYER_ROOTS",
    "LayeredHit",
    "SKILLS_DIR",
    "SkillLayer",
    "all_skill_names",
    "existing_layer_dirs",
    "iter_layer_candidates",
    "layer_root",
    "list_skill_dir_names",
    "resolve_layered",
]
