from sqlalchemy.orm import declarative_base

# Base declarativa para los modelos
Base = declarative_base()
