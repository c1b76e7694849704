from dotenv import load_dotenv

# Load environment variables from .env file before settings are read
load_dotenv()
