# Source package
from .chunking import Chunk, Document, SlidingWindowChunker, chunk_documents
from .embeddings import OllamaEmbeddingClient, OpenAIEmbeddingClient, cosine_similarity, create_embedding_provider
from .vector_store import Metadata, SearchResult, VectorStore, build_vector_store, search
from .generator import OllamaChatClient, OpenAIChatClient, build_prompt, create_completion_provider
from .rag_pipeline import Answer, QueryOptions, RAGService, SourceAttribution, run_ingestion
