"""All magic numbers and configuration constants."""

PREFETCH_CACHE_CAPACITY = 50                 # max synthesized segments kept in memory
PREFETCH_HORIZON = 2                         # segments fetched ahead of the one playing
SEEK_QUIESCENCE_SECONDS = 0.01               # pause between stop and re-arm on seek
TONE_CONTEXT_AHEAD = 5                       # upcoming segments shown to tone inference
DEFAULT_TONE = "Neutral"                     # fallback when tone inference fails
TONE_EXAMPLES = (
    "Cheerful", "Angry", "Sad", "Suspicious", "Neutral", "Excited",
    "Funny", "Serious", "Fearful", "Whispering", "Shouting",
)
PCM_SAMPLE_RATE = 24000                      # Hz: raw PCM from the emotive backend
PCM_SAMPLE_WIDTH = 2                         # bytes: little-endian int16
TTS_RETRY_COUNT = 3                          # max attempts per cloud synthesis call
TTS_RETRY_BASE_DELAY = 1.0                   # seconds: base delay for exponential backoff
DEFAULT_ENGINE = "edge"
ENGINES = ("edge", "openai", "local")
EDGE_VOICE = "en-US-AriaNeural"              # cloud-plain default voice
OPENAI_VOICE = "alloy"                       # cloud-emotive default voice
OPENAI_VOICES = ("alloy", "ash", "ballad", "coral", "echo", "fable", "onyx", "nova", "sage", "shimmer")
OPENAI_TONE_MODEL = "gpt-4o-mini"
OPENAI_SPEECH_MODEL = "gpt-4o-mini-tts"
LOCAL_RATE = 175                             # words per minute for the device voice
LOCAL_PITCH = 50                             # espeak base pitch; other drivers ignore it
EDGE_VOICES = (
    "en-US-AriaNeural",
    "en-US-GuyNeural",
    "en-US-JennyNeural",
    "en-US-DavisNeural",
    "en-GB-SoniaNeural",
    "en-GB-RyanNeural",
    "en-AU-NatashaNeural",
    "en-IE-EmilyNeural",
)
VERSION = "0.1.0"
