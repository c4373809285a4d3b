BINARY_EXTENSIONS = {
    ".pdf",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".webp",
    ".bmp",
    ".ico",
    ".tiff",
    ".heic",
    ".zip",
    ".tar",
    ".gz",
    ".bz2",
    ".xz",
    ".7z",
    ".rar",
    ".jar",
    ".war",
    ".so",
    ".dll",
    ".dylib",
    ".a",
    ".o",
    ".obj",
    ".exe",
    ".bin",
    ".class",
    ".woff",
    ".woff2",
    ".ttf",
    ".otf",
    ".eot",
    ".mp3",
    ".mp4",
    ".mov",
    ".wav",
    ".avi",
    ".mkv",
    ".flac",
}

DOC_TEXT_EXTENSIONS = (".md", ".markdown", ".txt", ".rst", ".adoc")


def is_binary_path(file_name: str) -> bool:
    name = file_name.strip().lower()
    return any(name.endswith(ext) for ext in BINARY_EXTENSIONS)


def is_doc_text_file(file_name: str) -> bool:
    name = file_name.strip().lower()
    return bool(name) and name.endswith(DOC_TEXT_EXTENSIONS)
