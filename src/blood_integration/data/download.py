"""
Download public blood scRNA-seq inputs.

10x Genomics datasets are fetched over HTTPS from the registry in
``Settings.DATASETS``; GEO series are fetched with GEOparse.
"""

import logging
import tarfile
from pathlib import Path
from typing import Optional, Union

import GEOparse
import requests
from tqdm import tqdm

from blood_integration.config.settings import get_settings
from blood_integration.exceptions import ConfigError, LoadError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download_file(url: str, dest: Union[str, Path], timeout: int = 60, overwrite: bool = False) -> Path:
    """
    Stream ``url`` to ``dest`` with a progress bar.

    The file is written under a temporary name and renamed once complete, so
    an interrupted download never leaves a truncated file at ``dest``.
    """
    dest = Path(dest)
    if dest.exists() and not overwrite:
        logger.info(f"Already downloaded: {dest}")
        return dest

    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")

    logger.info(f"Downloading {url}")
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0)) or None
            with open(partial, "wb") as f, tqdm(
                total=total, unit="B", unit_scale=True, desc=dest.name, disable=None
            ) as progress:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                    progress.update(len(chunk))
    except requests.RequestException as e:
        partial.unlink(missing_ok=True)
        raise LoadError(f"Download of {url} failed: {e}", cause=e) from e

    partial.replace(dest)
    logger.info(f"Saved {dest}")
    return dest


def extract_archive(archive: Union[str, Path], dest: Union[str, Path]) -> Path:
    """Extract a tar(.gz) archive into ``dest``, refusing members that escape it."""
    archive = Path(archive)
    dest = Path(dest).resolve()
    dest.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive) as tar:
            members = tar.getmembers()
            for member in members:
                target = (dest / member.name).resolve()
                if dest != target and dest not in target.parents:
                    raise LoadError(f"Archive member {member.name} escapes {dest}")
                if member.issym() or member.islnk():
                    raise LoadError(f"Archive member {member.name} is a link")
            tar.extractall(dest, members=members)
    except tarfile.TarError as e:
        raise LoadError(f"Could not extract {archive}: {e}", cause=e) from e

    return dest


def _find_mtx_dir(root: Path) -> Path:
    matches = sorted(root.glob("**/matrix.mtx*"))
    if not matches:
        raise LoadError(f"No matrix.mtx found under {root}")
    return matches[0].parent


def download_public_dataset(name: str, dest_dir: Optional[Union[str, Path]] = None, overwrite: bool = False) -> Path:
    """
    Download one dataset from the ``Settings.DATASETS`` registry.

    Returns
    -------
    Path
        A path :func:`blood_integration.data.loading.load_counts` accepts: the
        HDF5 file, or the directory holding ``matrix.mtx`` for archives.
    """
    settings = get_settings()
    if name not in settings.DATASETS:
        raise ConfigError(f"Unknown dataset '{name}'; known: {', '.join(settings.DATASETS)}")

    description, url, file_format = settings.DATASETS[name]
    dest_dir = Path(dest_dir) if dest_dir else settings.get_raw_data_path(name)
    logger.info(f"{name}: {description}")

    target = download_file(url, dest_dir / url.rsplit("/", 1)[-1], overwrite=overwrite)

    if target.name.endswith((".tar.gz", ".tgz", ".tar")):
        extract_archive(target, dest_dir)
        return _find_mtx_dir(dest_dir)
    if file_format == "mtx":
        return _find_mtx_dir(dest_dir)
    return target


def download_geo_supplementary(geo_id: str, dest_dir: Optional[Union[str, Path]] = None) -> Path:
    """Download the supplementary files of a GEO series (e.g. whole-blood count tables)."""
    settings = get_settings()
    dest_dir = Path(dest_dir) if dest_dir else settings.get_raw_data_path(geo_id)
    dest_dir.mkdir(parents=True, exist_ok=True)

    logger.info(f"Fetching GEO series {geo_id}")
    try:
        gse = GEOparse.get_GEO(geo=geo_id, destdir=str(dest_dir), silent=True)
        logger.info(f"{geo_id}: {gse.metadata.get('title', ['Unknown'])[0]} ({len(gse.gsms)} samples)")
        gse.download_supplementary_files(directory=str(dest_dir), download_sra=False)
    except (OSError, ValueError, requests.RequestException) as e:
        raise LoadError(f"Could not download GEO series {geo_id}: {e}", cause=e) from e

    return dest_dir
