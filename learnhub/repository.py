"""
Material table access.
"""

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from .database import Database
from .errors import DatabaseError, NotFoundError
from .models import Material, MaterialStatus


class MaterialRepository:
    def __init__(self, db: Database):
        self.db = db

    async def create(
        self,
        title: str,
        course_id: str,
        file_url: str,
        public_id: str | None = None,
        resource_type: str = "raw",
    ) -> Material:
        try:
            async with self.db.session() as session:
                material = Material(
                    title=title,
                    course_id=course_id,
                    file_url=file_url,
                    public_id=public_id,
                    resource_type=resource_type,
                    status=MaterialStatus.PENDING,
                )
                session.add(material)
                await session.commit()
                return material
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not create material '{title}'", detail=str(e)) from e

    async def get(self, material_id: str) -> Material | None:
        async with self.db.session() as session:
            return await session.get(Material, material_id)

    async def require(self, material_id: str) -> Material:
        material = await self.get(material_id)
        if material is None:
            raise NotFoundError(f"Material {material_id} not found")
        return material

    async def list_materials(
        self,
        course_id: str | None = None,
        status: MaterialStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Material]:
        query = select(Material).order_by(Material.created_at.desc(), Material.id)
        if course_id:
            query = query.where(Material.course_id == course_id)
        if status:
            query = query.where(Material.status == status)

        async with self.db.session() as session:
            result = await session.scalars(query.limit(limit).offset(offset))
            return list(result)

    async def completed_ids(self, scope_id: str | None = None) -> list[str]:
        """Ids of completed materials, optionally scoped to a course id or a material id."""
        query = select(Material.id).where(Material.status == MaterialStatus.COMPLETED)
        if scope_id:
            query = query.where(or_(Material.course_id == scope_id, Material.id == scope_id))

        async with self.db.session() as session:
            return list(await session.scalars(query))

    async def counts(self, course_id: str | None = None) -> dict:
        """Material totals and summed chunk counts for the stats endpoint."""
        total = select(func.count()).select_from(Material)
        completed = select(func.count(), func.coalesce(func.sum(Material.chunks_count), 0)).where(
            Material.status == MaterialStatus.COMPLETED
        )
        if course_id:
            total = total.where(Material.course_id == course_id)
            completed = completed.where(Material.course_id == course_id)

        async with self.db.session() as session:
            total_materials = await session.scalar(total)
            completed_materials, total_chunks = (await session.execute(completed)).one()

        return {
            "total_materials": total_materials,
            "completed_materials": completed_materials,
            "total_chunks": int(total_chunks),
        }

    async def delete(self, material_id: str) -> Material:
        """Delete the row (its queue entry cascades). Returns the deleted row."""
        try:
            async with self.db.session() as session:
                material = await session.get(Material, material_id)
                if material is None:
                    raise NotFoundError(f"Material {material_id} not found")
                await session.delete(material)
                await session.commit()
                return material
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not delete material {material_id}", detail=str(e)) from e

    async def reset_chunks(self, material_id: str) -> None:
        try:
            async with self.db.session() as session:
                material = await session.get(Material, material_id)
                if material is None:
                    raise NotFoundError(f"Material {material_id} not found")
                material.chunks_count = 0
                await session.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not update material {material_id}", detail=str(e)) from e
