import asyncio

from sklearn.feature_extraction.text import HashingVectorizer

from finance_categorizer.errors import EmbeddingError


class HashingEmbeddingProvider:
    """
    Fixed-dimension text embeddings from hashed character n-grams.

    Needs no fitting or vocabulary, so embeddings of old and new transactions stay
    comparable as the index grows.
    """

    def __init__(self, dimensions: int = 512) -> None:
        self.dimensions = dimensions
        self.vectorizer = HashingVectorizer(
            analyzer="char_wb",
            ngram_range=(3, 5),
            n_features=dimensions,
            alternate_sign=False,
            norm="l2",
            lowercase=True,
        )

    def embed_sync(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingError("cannot embed empty text")
        matrix = self.vectorizer.transform([text])
        return matrix.toarray()[0].tolist()

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.embed_sync, text)
