"""Localized user-facing messages, compile-error categories and suggestions.

Only two languages are shipped (``en`` and ``tr``); anything else falls back
to English.
"""

from __future__ import annotations

from .models import ErrorKind, PipelineStep

DEFAULT_LANGUAGE = "en"

# ---------------------------------------------------------------------------
# Generic messages per error kind
# ---------------------------------------------------------------------------

_KIND_MESSAGES: dict[str, dict[ErrorKind, str]] = {
    "en": {
        ErrorKind.SOURCE: "The uploaded document could not be read. Please check the file and upload it again.",
        ErrorKind.COLLABORATOR: "The layout service is temporarily unavailable. Please try again.",
        ErrorKind.COMPILATION: "PDF compilation failed. Try different settings or check your document.",
        ErrorKind.VALIDATION: "The PDF was produced but failed the quality check.",
        ErrorKind.INFRASTRUCTURE: "A storage service is unavailable. Please try again later.",
        ErrorKind.INTERNAL: "An unexpected error occurred. Please try again.",
    },
    "tr": {
        ErrorKind.SOURCE: "Yuklenen dosya okunamadi. Dosyayi kontrol edip tekrar yukleyin.",
        ErrorKind.COLLABORATOR: "Dizgi servisi gecici olarak kullanilamiyor. Lutfen tekrar deneyin.",
        ErrorKind.COMPILATION: "PDF derleme basarisiz oldu. Farkli ayarlarla tekrar deneyin veya dosyanizi kontrol edin.",
        ErrorKind.VALIDATION: "PDF olusturuldu ancak kalite kontrolunden gecemedi.",
        ErrorKind.INFRASTRUCTURE: "Depolama servisine ulasilamiyor. Lutfen daha sonra tekrar deneyin.",
        ErrorKind.INTERNAL: "Beklenmeyen bir hata olustu. Lutfen tekrar deneyin.",
    },
}

INTERRUPTED_MESSAGE = {
    "en": "Processing was interrupted by a service restart. Use retry to run it again.",
    "tr": "Islem servis yeniden baslatildigi icin yarida kaldi. Tekrar denemeyi kullanin.",
}


def _lang(language: str | None) -> str:
    return language if language in _KIND_MESSAGES else DEFAULT_LANGUAGE


def kind_message(kind: ErrorKind, language: str | None = None) -> str:
    """Return the generic user message for an error kind."""
    return _KIND_MESSAGES[_lang(language)][kind]


# ---------------------------------------------------------------------------
# Compilation error categories
# ---------------------------------------------------------------------------

# (predicate over the lowercased log, message key) in priority order
_COMPILE_CATEGORIES = [
    (lambda log: "file" in log and "not found" in log, "missing_file"),
    (lambda log: "undefined control sequence" in log, "undefined_command"),
    (lambda log: "missing" in log and "inserted" in log, "missing_inserted"),
    (lambda log: "emergency stop" in log, "emergency_stop"),
    (lambda log: "timeout" in log or "timed out" in log, "timeout"),
    (lambda log: "memory" in log or "capacity" in log, "capacity"),
]

_COMPILE_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "missing_file": "PDF compilation failed: one or more image files were not found. Make sure images are valid PNG/JPG files.",
        "undefined_command": "PDF compilation failed: an undefined command was found. Try a different chapter style or font.",
        "missing_inserted": "PDF compilation failed: the document structure is missing an element and automatic repair did not fix it.",
        "emergency_stop": "PDF compilation failed: the compiler stopped on a critical error. The document may contain special characters or unsupported content.",
        "timeout": "PDF compilation timed out. The document may be too large; try splitting it into smaller parts.",
        "capacity": "PDF compilation ran out of memory. Try reducing the number or size of images.",
        "generic": "PDF compilation failed. Try different settings or check your document.",
    },
    "tr": {
        "missing_file": "PDF derleme hatasi: Bir veya daha fazla gorsel dosyasi bulunamadi. Gorsellerin gecerli formatta (PNG/JPG) oldugundan emin olun.",
        "undefined_command": "PDF derleme hatasi: LaTeX kodunda tanimsiz komut bulundu. Farkli bir bolum stili veya font deneyin.",
        "missing_inserted": "PDF derleme hatasi: LaTeX yapisinda eksik eleman var. Otomatik duzeltme basarisiz oldu.",
        "emergency_stop": "PDF derleme hatasi: Derleyici kritik bir hatayla durdu. Dosyanizda ozel karakterler veya desteklenmeyen icerik olabilir.",
        "timeout": "PDF derleme zaman asimina ugradi. Dosyaniz cok buyuk olabilir, daha kucuk bolumler halinde deneyin.",
        "capacity": "PDF derleme sirasinda bellek yetersizligi olustu. Dosyadaki gorsel sayisini veya boyutunu azaltmayi deneyin.",
        "generic": "PDF derleme basarisiz oldu. Farkli ayarlarla tekrar deneyin veya dosyanizi kontrol edin.",
    },
}


def categorize_compile_error(log: str | None, language: str | None = None) -> str:
    """Map a compilation log to a short, localized user message."""
    text = (log or "").lower()
    key = "generic"
    for predicate, name in _COMPILE_CATEGORIES:
        if predicate(text):
            key = name
            break
    return _COMPILE_MESSAGES[_lang(language)][key]


# ---------------------------------------------------------------------------
# Remediation suggestions keyed on the failing step
# ---------------------------------------------------------------------------

_SUGGESTIONS: dict[str, dict[PipelineStep, list[str]]] = {
    "en": {
        PipelineStep.PARSING: [
            "Make sure the file is not corrupted",
            "Open the file in Word and save it again",
            "Check that the file is smaller than 50MB",
        ],
        PipelineStep.ANALYZING: [
            "Try again, the AI service may be temporarily busy",
            "Check the structure of your book (headings, chapters)",
        ],
        PipelineStep.PREPARING_ASSETS: [
            "Ensure images are valid PNG or JPG files",
            "Re-insert images that came from other programs",
        ],
        PipelineStep.GENERATING_MARKUP: [
            "Special characters in the text can cause problems",
            "Try a different chapter style",
            "Try again",
        ],
        PipelineStep.COMPILING: [
            "Try a different font or page size",
            "Ensure images are valid (PNG/JPG)",
            "Try again, automatic error repair will be applied",
        ],
        PipelineStep.VALIDATING: [
            "The PDF was created but the quality check reported a problem",
            "You can download the result and review it",
        ],
        PipelineStep.STORING: [
            "Try again later, the storage service may be unavailable",
        ],
    },
    "tr": {
        PipelineStep.PARSING: [
            "Dosyanin bozuk olmadigindan emin olun",
            "Dosyayi Word'de acip tekrar kaydedin",
            "Dosya boyutunun 50MB'i asmedigini kontrol edin",
        ],
        PipelineStep.ANALYZING: [
            "Tekrar deneyin, AI servisi gecici olarak mesgul olabilir",
            "Kitabinizin yapisini kontrol edin (basliklar, bolumler)",
        ],
        PipelineStep.PREPARING_ASSETS: [
            "Gorsellerin gecerli PNG veya JPG dosyalari oldugundan emin olun",
            "Baska programlardan gelen gorselleri yeniden ekleyin",
        ],
        PipelineStep.GENERATING_MARKUP: [
            "Metinde ozel karakterler varsa sorun cikabilir",
            "Farkli bir bolum stili deneyin",
            "Tekrar deneyin",
        ],
        PipelineStep.COMPILING: [
            "Farkli bir font veya sayfa boyutu deneyin",
            "Gorsellerin gecerli formatta oldugundan emin olun (PNG/JPG)",
            "Tekrar deneyin, otomatik hata duzeltme uygulanacaktir",
        ],
        PipelineStep.VALIDATING: [
            "PDF olusturuldu ancak kalite kontrolunde sorun var",
            "Sonucu indirip kontrol edebilirsiniz",
        ],
        PipelineStep.STORING: [
            "Daha sonra tekrar deneyin, depolama servisi kullanilamiyor olabilir",
        ],
    },
}

_DEFAULT_SUGGESTIONS = {
    "en": ["Please try again", "If the problem persists, contact support"],
    "tr": ["Lutfen tekrar deneyin", "Sorun devam ederse destek ile iletisime gecin"],
}


def suggestions_for(step: PipelineStep | str | None, language: str | None = None) -> list[str]:
    """Return remediation hints for a failing step."""
    lang = _lang(language)
    try:
        key = PipelineStep(step) if step is not None else None
    except ValueError:
        key = None
    return list(_SUGGESTIONS[lang].get(key, _DEFAULT_SUGGESTIONS[lang]))
