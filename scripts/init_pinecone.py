from pinecone import Pinecone, ServerlessSpec
from lib.config import get_settings

# text-embedding-3-large
EMBEDDING_DIMENSION = 3072

def init_pinecone():
    """Create the content index that /api/v16/query-content searches"""
    try:
        settings = get_settings()
        pc = Pinecone(api_key=settings.pinecone_api_key)
        index_name = settings.pinecone_index

        # Check if index already exists
        if not pc.has_index(index_name):
            print(f"Creating new Pinecone index '{index_name}'...")
            pc.create_index(
                name=index_name,
                dimension=EMBEDDING_DIMENSION,
                metric="cosine",
                spec=ServerlessSpec(
                    cloud="aws",
                    region="us-east-1"
                )
            )
            print("Index created successfully!")
        else:
            print(f"Index '{index_name}' already exists.")

    except Exception as e:
        print(f"Error initializing Pinecone: {str(e)}")
        raise

if __name__ == "__main__":
    init_pinecone()
