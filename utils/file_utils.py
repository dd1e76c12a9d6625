"""
File operation utilities
"""

from pathlib import Path
from typing import List

from core.types import PhotoRecord

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.tiff', '.webp'}


def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Get all image files in directory, sorted"""
    path = Path(directory)
    candidates = path.rglob('*') if recursive else path.glob('*')
    return sorted(
        str(f) for f in candidates
        if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
    )


def photo_records_from_directory(directory: str, recursive: bool = True) -> List[PhotoRecord]:
    """One PhotoRecord per image file; the path is the stable photo id"""
    records = []
    for file_path in get_image_files(directory, recursive):
        stat = Path(file_path).stat()
        records.append(PhotoRecord(
            id=file_path,
            data=file_path,
            last_modified=stat.st_mtime,
            size=stat.st_size,
        ))
    return records


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"
