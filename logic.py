import json
import logging
import time

from google import genai

from config import settings

logger = logging.getLogger("agronex_api.assistant")


class AssistantUnavailableError(RuntimeError):
    """El asistente no tiene API key de Gemini configurada."""


class AgronomyAssistant:
    def __init__(self, api_key, model="gemini-1.5-pro"):
        """
        Inicializa el asistente agronómico con Gemini.

        Args:
            api_key (str): API key de Google AI
            model (str): Modelo de Gemini a utilizar (por defecto: gemini-1.5-pro)
        """
        self.model = model
        if api_key:
            self.client = genai.Client(api_key=api_key)
        else:
            logger.warning(
                "No se proporcionó API key para Gemini - El asistente no funcionará"
            )
            self.client = None

    @property
    def available(self):
        return self.client is not None

    def _generate(self, prompt, temperature=0.7, max_output_tokens=2048):
        if not self.client:
            raise AssistantUnavailableError("Falta la API key de Gemini")

        # Configura parámetros de generación
        generation_config = {
            "temperature": temperature,
            "top_p": 0.95,
            "top_k": 40,
            "max_output_tokens": max_output_tokens,
        }

        start_time = time.time()
        response = self.client.models.generate_content(
            model=self.model, contents=prompt, config=generation_config
        )
        logger.debug(f"Respuesta de Gemini en {time.time() - start_time:.2f} segundos")
        return (response.text or "").strip()

    def _system_prompt(self, user_id, context=None):
        conditions = f"- Condiciones actuales: {json.dumps(context)}" if context else ""
        return f"""
        Eres AgroNex AI, un asistente agrícola experto en técnicas modernas de cultivo,
        monitoreo de cultivos y agricultura sostenible. Ayudas a los agricultores con:

        1. Análisis de datos de sensores (temperatura, humedad, CO2, luz, humedad del suelo)
        2. Consejos y buenas prácticas de cultivo
        3. Diagnóstico de enfermedades y plagas
        4. Recomendación de condiciones óptimas de crecimiento
        5. Calendarios de mantenimiento y cuidado

        Contexto del usuario:
        - Usuario: {user_id}
        {conditions}

        Responde de forma práctica, amable y profesional, en el idioma de la pregunta.
        Sé conciso pero informativo.
        """

    def ask(self, message, user_id, context=None):
        """Responde una pregunta libre del usuario."""
        prompt = f"{self._system_prompt(user_id, context)}\n\nPregunta del usuario: {message}"
        return self._generate(prompt)

    def analyze_sensor_data(self, sensor_data, timeframe="24h"):
        prompt = f"""
        Como experto agrícola, analiza los siguientes datos de sensores:

        Datos (últimas {timeframe}):
        {json.dumps(sensor_data, indent=2, default=str)}

        Proporciona:
        1. Evaluación general de las condiciones de cultivo
        2. Tendencias o valores preocupantes
        3. Recomendaciones concretas de mejora
        4. Resultado previsto si las condiciones continúan
        5. Acciones inmediatas necesarias (si las hay)

        Organiza la respuesta en secciones claras con consejos accionables.
        """
        return self._generate(prompt)

    def farming_tips(self, crop_type=None, growth_stage=None, current_conditions=None, specific_question=None):
        conditions = ""
        if current_conditions:
            conditions = f"Condiciones actuales: {json.dumps(current_conditions)}"
        question = f"Pregunta específica: {specific_question}" if specific_question else ""
        crop = crop_type or "Cultivos en general"
        stage = growth_stage or "Todas las etapas"

        prompt = f"""
        Proporciona consejos de cultivo expertos para:
        - Cultivo: {crop}
        - Etapa de crecimiento: {stage}
        {conditions}
        {question}

        Incluye:
        1. Buenas prácticas para las condiciones actuales
        2. Problemas comunes a vigilar
        3. Calendario óptimo de cuidados
        4. Recomendaciones estacionales
        5. Técnicas de cultivo sostenible
        """
        return self._generate(prompt)

    def _create_trend_prompt(self, data):
        """Crea un prompt específico para análisis de tendencias de sensores."""
        return f"""
        # Análisis de Datos de Sensores del Cultivo

        Analiza los siguientes datos de sensores y proporciona una evaluación detallada.

        ## Datos
        ```
        {data}
        ```

        ## Instrucciones
        1. Identifica patrones (estables, ascendentes, descendentes, fluctuantes)
        2. Detecta anomalías que indiquen estrés del cultivo o fallos de sensores
        3. Evalúa el riesgo para el cultivo de 0 a 100
        4. Proporciona recomendaciones específicas

        ## Formato de Respuesta
        Tu respuesta DEBE estar en formato JSON con exactamente esta estructura:

        {{
            "trend": "estable|creciente|decreciente|fluctuante",
            "risk_score": valor_numérico_entre_0_y_100,
            "recommendation": "texto con acción recomendada",
            "details": {{
                "patterns": ["lista", "de", "patrones"],
                "anomalies": ["lista", "de", "anomalías"],
                "explanation": "explicación del análisis"
            }}
        }}
        """

    def _create_fallback_analysis(self, text):
        """Crea un análisis predeterminado si falla el procesamiento de JSON."""
        return {
            "trend": "análisis incompleto",
            "risk_score": 0,
            "recommendation": "Se recomienda revisar manualmente los datos",
            "details": {"original_response": text[:500] + "..."},
        }

    def analyze_trends(self, data):
        """Genera un análisis de tendencias estructurado a partir de datos de sensores."""
        try:
            response_text = self._generate(
                self._create_trend_prompt(data), max_output_tokens=4096
            )
        except AssistantUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Error en análisis Gemini: {e}")
            return {
                "trend": "error",
                "risk_score": 0,
                "recommendation": f"Error en análisis: {str(e)}",
                "details": {"error": str(e)},
            }

        # Buscar el inicio y fin de un posible objeto JSON
        json_start = response_text.find("{")
        json_end = response_text.rfind("}") + 1
        if json_start < 0 or json_end <= json_start:
            return self._create_fallback_analysis(response_text)

        try:
            result = json.loads(response_text[json_start:json_end])
            return {
                "trend": result.get("trend", "desconocida"),
                "risk_score": float(result.get("risk_score", 0)),
                "recommendation": result.get(
                    "recommendation", "No hay recomendaciones disponibles"
                ),
                "details": result.get("details", {}),
            }
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.error(f"Error al procesar respuesta JSON: {e}")
            return self._create_fallback_analysis(response_text)


def analyze_sensor_trends(db, assistant, user_id):
    """Analiza las lecturas recientes del usuario y guarda el resultado."""
    if not assistant.available:
        logger.warning(
            "No se puede realizar análisis: asistente no inicializado"
        )
        return None

    readings, _ = db.list_readings(user_id, limit=50)
    if len(readings) < 5:
        logger.warning("No hay suficientes datos para analizar")
        return None

    stats = db.reading_stats(user_id, readings[-1]["timestamp"])
    summary = "\n".join(
        f"- {s['sensor_type']}: promedio {s['avg']}, mínimo {s['min']}, máximo {s['max']}"
        for s in stats["per_sensor"]
    )
    latest = "\n".join(
        f"{r['timestamp']} {r['sensor_type']}={r['value']}{r['unit']} ({r['status']})"
        for r in readings[:10]
    )
    data = f"""
    Estadísticas:
    {summary}

    Total de lecturas analizadas: {len(readings)}

    Últimas 10 lecturas:
    {latest}
    """

    result = assistant.analyze_trends(data)
    if result:
        result["period"] = f"últimas {len(readings)} lecturas"
        analysis_id = db.save_trend_analysis(user_id, result)
        logger.info(f"Análisis completado y guardado con ID: {analysis_id}")
    return result


assistant = AgronomyAssistant(settings.gemini_api_key, settings.gemini_model)
