"""Recording media: transcoding, the local WAV cache and range-aware delivery."""
